"""Credential Vault Meta information.
   Credential Vault keeps third-party access material encrypted at rest,
   readable only by authorized callers and rotatable without downtime.
"""
__title__ = 'credential_vault'
__description__ = (
   'Credential Vault keeps third-party access material encrypted at rest '
   'and rotatable without downtime.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2026 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/credential-vault'

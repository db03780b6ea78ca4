"""Guardian Vault Meta information.
   Guardian Vault keeps shared credentials encrypted at rest and gates
   every read behind guardian approval.
"""
__title__ = 'guardian_vault'
__description__ = (
   'Shared-credential vault with AES-256-GCM storage, key rotation '
   'and guardian approval workflows.'
)
__version__ = '0.3.0'
__author__ = 'Guardian Vault Developers'
__license__ = 'Apache-2.0'

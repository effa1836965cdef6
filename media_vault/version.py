"""Media Vault Meta information.
   Media Vault protects encrypted media behind short-lived signed capabilities.
"""
__title__ = 'media_vault'
__description__ = (
   'Media Vault content-protection core: authenticated encryption, '
   'passphrase-derived vault keys and signed media capabilities.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2026 Media Vault Authors'
__author__ = 'Media Vault Authors'
__author_email__ = 'dev@mediavault.local'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/mediavault/media-vault'

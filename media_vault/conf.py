"""Media Vault settings shared by the session layer and the HTTP surface."""
import os

# Request keys
SESSION_OBJECT = 'mediavault_session'
AUTH_IDENTITY = 'mediavault_identity'

# Session data keys
SESSION_ID = 'session_id'
SESSION_KEY = 'user_id'
VAULT_CONTEXT = 'vault_context'

SESSION_COOKIE = os.environ.get('MEDIAVAULT_SESSION_COOKIE', 'MV_SESSION')
SESSION_MAX_AGE = int(os.environ.get('MEDIAVAULT_SESSION_MAX_AGE', 86400))

# Cache-Control directives
NO_STORE_CACHE = 'no-store, no-cache, must-revalidate, private, max-age=0'
PUBLIC_CACHE = 'public, max-age=3600'

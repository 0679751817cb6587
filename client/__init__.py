"""client/ -- Python client for the Sprue API with transparent token refresh.

Layer rule: client/ talks to the server over HTTP only. It does NOT import
from api/, auth/, or core/.
"""

from client.errors import AuthenticationError
from client.manager import CredentialManager, Credentials

__all__ = ["AuthenticationError", "CredentialManager", "Credentials"]

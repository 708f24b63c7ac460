from .user import User
from .client import Client
from .sharing import ClientShareCode, SharedClient, PermissionLevel
from .rate_limit import RateLimitEntry

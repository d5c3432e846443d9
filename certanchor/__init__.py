"""Certificate anchoring service: store certificates in S3, notarize their hashes on-chain."""

from .api import create_app
from .hashing import digest

__version__ = "0.1.0"

__all__ = ["create_app", "digest", "__version__"]

from .crawler import MirrorStats, SiteMirror, mirror_site
from .errors import DecodeError, InvalidUrl, MirrorError, PersistenceError, TransportError
from .settings import Settings

__version__ = "0.1.0"

__all__ = [
    "DecodeError",
    "InvalidUrl",
    "MirrorError",
    "MirrorStats",
    "PersistenceError",
    "Settings",
    "SiteMirror",
    "TransportError",
    "mirror_site",
]

from .filename import sanitize_filename
from .hash import hash_stable

__all__ = ["hash_stable", "sanitize_filename"]

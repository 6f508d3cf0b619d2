from leaklock.security.names import sanitize_resource_name
from leaklock.security.paths import PathGuard, validate_path, validate_path_within

__all__ = ["PathGuard", "sanitize_resource_name", "validate_path", "validate_path_within"]

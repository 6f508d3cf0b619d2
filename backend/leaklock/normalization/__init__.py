from leaklock.normalization.classifiers import is_dependency_path, severity_of
from leaklock.normalization.pipeline import NormalizationContext, normalize_report, normalize_text

__all__ = [
    "NormalizationContext",
    "is_dependency_path",
    "normalize_report",
    "normalize_text",
    "severity_of",
]

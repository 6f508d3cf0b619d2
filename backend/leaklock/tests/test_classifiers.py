import pytest

from leaklock.models import Severity
from leaklock.normalization import is_dependency_path, severity_of


@pytest.mark.parametrize(
    "path",
    [
        "node_modules/pkg/secrets.js",
        "app/vendor/lib/config.php",
        "build\\generated\\keys.txt",
        ".venv/lib/site-packages/x.py",
        "a/b/__pycache__/mod.pyc",
    ],
)
def test_dependency_directories_are_detected(path):
    assert is_dependency_path(path) is True


@pytest.mark.parametrize(
    "path",
    ["src/secrets.js", "my_node_modules_notes/a.txt", "vendored/x.py", "build", "docs/environment.md"],
)
def test_segment_matching_not_substring(path):
    assert is_dependency_path(path) is False


@pytest.mark.parametrize(
    "rule, expected",
    [
        ("aws_secret_key", Severity.HIGH),
        ("Generic API Key", Severity.HIGH),
        ("private-key", Severity.HIGH),
        ("GitHub Personal Access Token", Severity.HIGH),
        ("Password in URL", Severity.HIGH),
        ("Database Connection String", Severity.MEDIUM),
        ("jdbc url", Severity.MEDIUM),
        ("Config value", Severity.MEDIUM),
        ("Slack Webhook", Severity.LOW),
        (None, Severity.MEDIUM),
        ("", Severity.MEDIUM),
    ],
)
def test_severity_of_rule(rule, expected):
    assert severity_of(rule) is expected

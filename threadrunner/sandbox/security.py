"""Security helpers for data crossing the sandbox boundary.

Artifacts reported by the agent are untrusted paths inside the sandbox and
must stay within the artifacts directory. Diagnostic output is truncated
before it is stored or surfaced.
"""

import posixpath
import shlex


def validate_artifact_path(artifacts_root: str, path: str) -> tuple[bool, str]:
    """Validate an artifact path reported from inside a sandbox.

    The path may be absolute (as printed by ``find``) or relative to the
    artifacts root, but it must resolve to a location inside the root.

    Args:
        artifacts_root: Absolute artifacts directory inside the sandbox.
        path: The reported path.

    Returns:
        A tuple of (is_valid, error_message).

    Examples:
        >>> validate_artifact_path("/root/artifacts", "/root/artifacts/report.md")
        (True, "")
        >>> validate_artifact_path("/root/artifacts", "/root/artifacts/../.ssh/id_rsa")
        (False, "Path traversal blocked: contains '..'")
        >>> validate_artifact_path("/root/artifacts", "/etc/passwd")
        (False, "Path outside artifacts directory: /etc/passwd")
    """
    if not path or not path.strip():
        return False, "Path cannot be empty"

    if "\x00" in path:
        return False, "Path contains null byte"

    # Reject parent traversal components while allowing names like "file..bak".
    components = [part for part in path.replace("\\", "/").split("/") if part not in ("", ".")]
    if ".." in components:
        return False, "Path traversal blocked: contains '..'"

    root = posixpath.normpath(artifacts_root)
    resolved = posixpath.normpath(posixpath.join(root, path))
    if resolved != root and not resolved.startswith(root + "/"):
        return False, f"Path outside artifacts directory: {path}"
    if resolved == root:
        return False, "Path is the artifacts directory itself"

    return True, ""


def truncate_diagnostic(output: str, max_length: int = 500) -> str:
    """Truncate diagnostic output (usually stderr) for errors and logs.

    Args:
        output: The raw output string.
        max_length: Maximum number of characters kept.

    Returns:
        The truncated output.
    """
    if not output:
        return ""

    if len(output) > max_length:
        truncated_chars = len(output) - max_length
        output = output[:max_length] + f"\n... [truncated, {truncated_chars} chars omitted]"

    return output


def shell_join(argv: list[str]) -> str:
    """Quote an argv list into a single POSIX shell command string."""
    return " ".join(shlex.quote(arg) for arg in argv)

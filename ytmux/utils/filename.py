import re

DISALLOWED_RE = re.compile(r"[^A-Za-z0-9 _.-]")
WHITESPACE_RE = re.compile(r"\s+")


def sanitize_filename(title: str, ext: str, max_length: int = 150) -> str:
    """
    Build an attachment filename safe for a quoted Content-Disposition value.
    Everything outside [A-Za-z0-9 _.-] is dropped and spaces become underscores.
    """
    name = DISALLOWED_RE.sub("", title or "")
    name = WHITESPACE_RE.sub("_", name.strip())
    name = name.strip("._-")[:max_length]
    if not name:
        name = "download"
    return f"{name}.{ext}"

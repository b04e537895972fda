"""URL and time-window helpers shared by the reconciler and categorizer."""

from urllib.parse import urlsplit


def normalize_url(url: str) -> str:
    """Reduce a URL to scheme + host + path, dropping query and fragment.

    Unparseable input (no scheme or host) is returned unchanged, so two
    identical malformed strings still compare equal.
    """
    if not url:
        return ""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme or not parts.netloc:
        return url
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}{parts.path}"


def get_domain(url: str) -> str:
    """Hostname of a URL, or the input itself when it has none."""
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return url
    return host or url


def is_same_page(a: dict, b: dict, compare_titles: bool = True) -> bool:
    """True when two session records point at the same logical page.

    Titles are compared by strict equality, so two blank titles match.
    """
    if normalize_url(a.get("url", "")) != normalize_url(b.get("url", "")):
        return False
    if compare_titles:
        return (a.get("title") or "") == (b.get("title") or "")
    return True


def session_end(session: dict) -> int:
    return session["timestamp"] + session["duration"]


def end_to_start_gap(earlier: dict, later: dict) -> int:
    """Milliseconds between the end of `earlier` and the start of `later`."""
    return later["timestamp"] - session_end(earlier)


def start_to_start_gap(earlier: dict, later: dict) -> int:
    return later["timestamp"] - earlier["timestamp"]


def format_duration(ms: int) -> str:
    """Human-readable duration: '1h 5m', '3m 20s', '45s'."""
    minutes = ms // 60000
    seconds = (ms % 60000) // 1000
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"

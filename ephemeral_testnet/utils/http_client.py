"""Global HTTP client."""

import requests

_session = None


def get_session() -> requests.Session:
    """Get a session object.

    The session is shared by all threads. `requests.Session` connection pooling is thread-safe
    for the simple GET/POST calls done by the framework.
    """
    global _session  # noqa: PLW0603

    if _session is None:
        _session = requests.Session()
        _session.headers.update({"Accept": "application/json"})
    return _session

class FetchError(Exception):
    """Base class for soft upstream failures returned by the gateway."""

    kind = 'fetch'

    def describe(self):
        return f"{self.kind}: {self}"


class FetchTimeout(FetchError):
    kind = 'timeout'

    def __init__(self, label, timeout_ms):
        super().__init__(f"{label} timed out after {timeout_ms}ms")
        self.label = label
        self.timeout_ms = timeout_ms


class HttpStatusError(FetchError):
    kind = 'http_status'

    def __init__(self, status, body_snippet=''):
        super().__init__(f"upstream returned {status}")
        self.status = status
        self.body_snippet = body_snippet


class ParseError(FetchError):
    kind = 'parse'

    def __init__(self, snippet=''):
        super().__init__('malformed response body')
        self.snippet = snippet


class NetworkError(FetchError):
    kind = 'network'

    def __init__(self, cause):
        super().__init__(str(cause) or cause.__class__.__name__)
        self.cause = cause


class SelectionError(Exception):
    pass


class EmptyCandidates(SelectionError):
    """No open batch is available to select."""


class StaleSelection(SelectionError):
    """The held batch is no longer confirmed by the upstream listing."""

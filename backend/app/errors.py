"""Error taxonomy shared by the ranking, metrics and experiment layers.

The HTTP layer maps these onto status codes; the ranking path never lets
InfrastructureError escape (it degrades to the popularity baseline instead).
"""


class RankerError(Exception):
    status_code = 500

    def __init__(self, message: str, *, details=None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(RankerError):
    status_code = 400


class NotFoundError(RankerError):
    status_code = 404


class ConflictError(RankerError):
    status_code = 409


class InfrastructureError(RankerError):
    """Backing store or cache unreachable / failing."""

    status_code = 503

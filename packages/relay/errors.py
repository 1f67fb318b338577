class RelayError(Exception):
    """Base error carrying the HTTP status the services translate it into."""

    status_code = 500

    def __init__(self, detail: str, status_code: int | None = None, **context):
        super().__init__(detail)
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code
        self.context = context


class ValidationError(RelayError):
    status_code = 400


class NotFoundError(RelayError):
    status_code = 404


class ConfigurationError(RelayError):
    """Required webhook or provider configuration is absent; never retried."""

    status_code = 424


class PersistenceError(RelayError):
    status_code = 500


class TransportError(RelayError):
    """Workflow engine or provider API timed out or answered non-2xx."""

    status_code = 502

"""
Pipeline error taxonomy.

Fatal errors (subclasses of PipelineError) end the request and map to a
caller-visible status code. Degradations are raised and caught inside the
pipeline's side-effect steps; they are logged and never change the response.
"""


class PipelineError(Exception):
    """Terminal, caller-visible failure of a postback request."""

    status_code: int = 500
    public_message: str = "Error"

    def __init__(self, message: str | None = None):
        self.message = message or self.public_message
        super().__init__(self.message)


# --- 400 ---

class InvalidInput(PipelineError):
    status_code = 400
    public_message = "Invalid input"


class MissingPartnerId(InvalidInput):
    public_message = "Missing partner ID (pid)"


class InvalidPartnerId(InvalidInput):
    public_message = "Malformed partner ID"


class MissingClickId(InvalidInput):
    public_message = "Missing clickid parameter"


# --- 403 / 404 ---

class Forbidden(PipelineError):
    status_code = 403
    public_message = "Forbidden"


class ForbiddenIp(Forbidden):
    def __init__(self, ip: str):
        self.ip = ip
        super().__init__(f"IP address {ip} is not allowed for this partner.")


class NotFound(PipelineError):
    status_code = 404
    public_message = "Not found"


class PartnerNotFound(NotFound):
    def __init__(self, partner_id: str):
        self.partner_id = partner_id
        super().__init__(f"Configuration for partner '{partner_id}' not found")


# --- 429 ---

class RateLimited(PipelineError):
    status_code = 429
    public_message = "Rate limit exceeded. Slow down."

    def __init__(self, key: str, limit: int, retry_after: int):
        self.key = key
        self.limit = limit
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded for {key}")


# --- 500 ---

class UpstreamUnavailable(PipelineError):
    status_code = 500
    public_message = "Upstream unavailable"


class ForwardUnavailable(UpstreamUnavailable):
    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Request failed: {reason}")


# ---------------------------------------------------------------------------
# Non-fatal degradations (logged, never surfaced)
# ---------------------------------------------------------------------------

class Degradation(Exception):
    pass


class PersistenceDegraded(Degradation):
    pass


class NotificationFailed(Degradation):
    pass


class ExportEnqueueFailed(Degradation):
    pass


class ExportDeliveryFailed(Degradation):
    pass

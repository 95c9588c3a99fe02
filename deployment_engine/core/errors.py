# deployment_engine/core/errors.py

# -----------------------------
# Base Errors
# -----------------------------

class DeploymentEngineError(Exception):
    """Base class for all deployment engine errors."""
    pass


# -----------------------------
# Configuration Errors
# -----------------------------

class ConfigError(DeploymentEngineError):
    """Invalid or ambiguous declarative input. Fixed by the operator, never retried."""

    def __init__(self, message: str, entity: str | None = None):
        self.entity = entity
        if entity:
            message = f"{entity}: {message}"
        super().__init__(message)


# -----------------------------
# Precondition Errors
# -----------------------------

class PreconditionError(DeploymentEngineError):
    """Control plane or proxy unreachable. Fatal for this invocation, safe to retry later."""
    pass


class RolloutInProgressError(PreconditionError):
    """Another rollout already holds the environment."""

    def __init__(self, environment: str, rollout_id=None):
        self.environment = environment
        self.rollout_id = rollout_id
        super().__init__(
            f"Rollout already in progress for environment '{environment}'"
            + (f" (rollout {rollout_id})" if rollout_id else "")
        )


class RollbackUnavailableError(DeploymentEngineError):
    """No prior revision exists for the requested service."""
    pass


# -----------------------------
# Scoped Errors
# -----------------------------

class ControlPlaneError(DeploymentEngineError):
    """A single control-plane call failed or exceeded its deadline."""
    pass


class HealthCheckTimeout(DeploymentEngineError):
    """An instance never became healthy within the wait window."""

    def __init__(self, identity: str, instance_id: str, timeout_seconds: float):
        self.identity = identity
        self.instance_id = instance_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"{identity}: instance {instance_id} not healthy after {timeout_seconds}s"
        )


class RenewalError(DeploymentEngineError):
    """Certificate issuance or renewal failed for one domain."""

    RATE_LIMITED = "rate-limited"
    DOMAIN_VALIDATION_FAILED = "domain-validation-failed"
    NETWORK_ERROR = "network-error"
    UNKNOWN = "error"

    def __init__(self, domain: str, reason: str, detail: str = ""):
        self.domain = domain
        self.reason = reason
        self.detail = detail
        message = f"{domain}: certificate request failed ({reason})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ReloadRejected(DeploymentEngineError):
    """Proxy refused the new routing configuration. Previous configuration stays active."""
    pass


class InvalidStateTransition(DeploymentEngineError):
    """Illegal service state transition attempted."""
    pass


# -----------------------------
# Persistence Errors
# -----------------------------

class PersistenceError(DeploymentEngineError):
    pass


class RecordNotFound(PersistenceError):
    pass

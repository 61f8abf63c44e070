"""Error taxonomy for optimization runs."""


class OptimizerError(Exception):
    """Base exception for all optimizer errors."""

    pass


# Validation: raised synchronously, before any evaluation starts


class ValidationError(OptimizerError):
    """Request or configuration rejected before the run starts."""

    pass


class RangeValidationError(ValidationError):
    """One or more parameter ranges are unusable."""

    def __init__(self, errors: list[str], phase: int | None = None) -> None:
        self.errors = list(errors)
        self.phase = phase
        prefix = f"Phase {phase}: " if phase is not None else ""
        super().__init__(prefix + "; ".join(self.errors))


class CombinationLimitError(ValidationError):
    """Parameter space is larger than the allowed combination count."""

    def __init__(self, actual: int, allowed: int, phase: int | None = None) -> None:
        self.actual = actual
        self.allowed = allowed
        self.phase = phase
        prefix = f"Phase {phase}: " if phase is not None else ""
        super().__init__(
            f"{prefix}Too many combinations: {actual} (max {allowed})"
        )


class ConfigValidationError(ValidationError):
    """Run request is malformed (no sessions, unknown phase, ...)."""

    pass


class UnknownStrategyError(ValidationError):
    """Strategy slug is not registered."""

    def __init__(self, slug: str) -> None:
        self.slug = slug
        super().__init__(f"Unknown strategy: {slug}")


# Evaluation: abort the run and surface as the terminal error event


class EvaluationError(OptimizerError):
    """Evaluating a parameter combination failed."""

    def __init__(self, message: str, parameters: dict[str, float] | None = None) -> None:
        self.parameters = parameters
        super().__init__(message)


class SessionDataError(EvaluationError):
    """Session ticks are malformed (out of order, non-positive price)."""

    pass


class SessionNotFoundError(OptimizerError):
    """No ticks are available for a requested session id."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class RunCancelledError(OptimizerError):
    """The run was cancelled cooperatively."""

    def __init__(self, reason: str = "cancelled") -> None:
        self.reason = reason
        super().__init__(reason)


class PersistenceError(OptimizerError):
    """Saving or loading a run failed."""

    pass

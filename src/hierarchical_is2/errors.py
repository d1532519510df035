from __future__ import annotations


class IS2Error(RuntimeError):
    """Fatal failure in one stage of an IS² run."""

    stage: str = "unknown"

    def __init__(self, message: str) -> None:
        super().__init__(f"[{self.stage}] {message}")


class SampleAssemblyError(IS2Error, ValueError):
    """Posterior draws are inconsistent or contain an invalid covariance draw."""

    stage = "assembly"


class MixtureFitError(IS2Error):
    """Every importance-mixture fit attempt failed."""

    stage = "mixture_fit"

    def __init__(self, message: str, *, attempts: int, last_error: BaseException | None = None) -> None:
        self.attempts = int(attempts)
        self.last_error = last_error
        super().__init__(message)


class AggregationError(IS2Error):
    """Log-weights could not be reduced to a finite estimate."""

    stage = "aggregation"

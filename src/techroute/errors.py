"""
Exceptions raised by the route optimizer and by its external collaborators.
"""

from typing import Iterable, List, Optional


class RouteOptimizationError(Exception):
    pass


class InputValidationError(RouteOptimizationError, ValueError):
    """
    The request cannot be optimized as given. `errors` lists every problem found.
    """

    def __init__(self, errors: Iterable[str]):
        self.errors: List[str] = list(errors)
        super().__init__("; ".join(self.errors) or "invalid optimization request")


class DistanceProviderError(RouteOptimizationError):
    """
    Raised by a traffic/weather provider that cannot answer.
    """

    def __init__(self, message: str, provider: Optional[str] = None):
        self.provider = provider
        super().__init__(message)


class ScoringUnavailableError(RouteOptimizationError):
    """
    Raised by an external route scorer that cannot score a solution.
    """

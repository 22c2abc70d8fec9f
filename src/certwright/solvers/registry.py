"""Solver registry and challenge combination selection."""

from collections.abc import Iterable

from certwright.exceptions import NoSolverError
from certwright.models import Authorization, Challenge
from certwright.solvers.base import Solver


class SolverRegistry:
    """Solvers keyed by the exact challenge type string they handle."""

    def __init__(self, solvers: Iterable[Solver] = ()):
        self._solvers: dict[str, Solver] = {}
        for solver in solvers:
            self.register(solver)

    def register(self, solver: Solver, challenge_type: str | None = None) -> None:
        """Register ``solver`` for ``challenge_type`` (default: its own type).

        Raises:
            ValueError: If the solver refuses the type it is registered for.
        """
        challenge_type = challenge_type or solver.challenge_type
        if not challenge_type or not solver.can_solve(challenge_type):
            raise ValueError(f"{type(solver).__name__} cannot solve {challenge_type!r}")
        self._solvers[challenge_type] = solver

    def get(self, challenge_type: str) -> Solver | None:
        return self._solvers.get(challenge_type)

    def __contains__(self, challenge_type: object) -> bool:
        return challenge_type in self._solvers

    def __len__(self) -> int:
        return len(self._solvers)

    @property
    def types(self) -> list[str]:
        return list(self._solvers)

    def select(self, authorization: Authorization) -> list[tuple[Challenge, Solver]]:
        """Pick the challenges to answer for one authorization.

        Combinations are tried in server order and the first one whose
        every challenge has a registered solver wins. Without explicit
        combinations each challenge is a combination of its own.

        Raises:
            NoSolverError: If no combination is fully covered.
        """
        challenges = authorization.challenges
        combinations = authorization.combinations
        if combinations is None:
            combinations = [[index] for index in range(len(challenges))]

        for combination in combinations:
            if not combination:
                continue
            if any(index < 0 or index >= len(challenges) for index in combination):
                continue
            selected = []
            for index in combination:
                solver = self.get(challenges[index].type)
                if solver is None:
                    break
                selected.append((challenges[index], solver))
            else:
                return selected

        raise NoSolverError(authorization.domain, [c.type for c in challenges])

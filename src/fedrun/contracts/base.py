"""Base contract enforcement utilities.

The require() function is the single enforcement mechanism for all contracts.
It enforces lifecycle invariants of a run, it does not validate user input.
"""

from fedrun.contracts.failure import ContractViolation


def require(condition: bool, message: str) -> None:
    """Enforce a run lifecycle contract.

    Called at state transitions to verify the preceding phase left the run
    in the state it promised. Fail-fast: no recovery, no fallback.

    Parameters
    ----------
    condition : bool
        The invariant that must be true. If False, ContractViolation is raised.

    message : str
        Error message explaining the contract violation (for debugging).

    Raises
    ------
    ContractViolation
        If condition is False. This indicates a bug in controller logic.

    Examples
    --------
    >>> require(run.results is None or run.error is None, "Run contract: results and error both set")
    """
    if not condition:
        raise ContractViolation(message)

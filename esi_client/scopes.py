"""Authorization scope set helpers.

Scopes arrive in several shapes: a space-delimited string from a JWT
``scp`` claim or the command line, a list from a decoded claim, or nothing
at all. Everything that compares or stores scopes goes through
``normalize_scopes`` first so that ``"a b"``, ``["b", "a"]`` and
``("a", "b")`` all describe the same grant.
"""

from typing import Iterable

ScopesInput = str | Iterable[str] | None


def normalize_scopes(scopes: ScopesInput) -> frozenset[str]:
    """Normalize a scope collection into a frozen set.

    Args:
        scopes: Space-delimited string, iterable of scope strings, or None

    Returns:
        Frozen set of individual scope strings (empty for None/empty input)
    """
    if not scopes:
        return frozenset()

    if isinstance(scopes, str):
        return frozenset(scopes.split())

    result: set[str] = set()
    for scope in scopes:
        # Tolerate list elements that are themselves space-delimited
        result.update(str(scope).split())
    return frozenset(result)


def scopes_equal(a: ScopesInput, b: ScopesInput) -> bool:
    """Check whether two scope collections grant the same permissions.

    Order and input representation are irrelevant.
    """
    left = normalize_scopes(a)
    right = normalize_scopes(b)

    if len(left) != len(right):
        return False

    return left == right


def format_scopes(scopes: ScopesInput) -> str:
    """Format scopes as a sorted, space-delimited string."""
    return " ".join(sorted(normalize_scopes(scopes)))

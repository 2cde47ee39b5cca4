"""Projection of documents into multi-valued attribute maps."""

from typing import Any, Callable, Mapping

AttributeMap = dict[str, list[Any]]


def wrap_values(value: Any) -> list[Any]:
    """Lists, tuples and sets pass through as lists; anything else becomes a one-element list."""
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def collect_attributes(
    document: Mapping[str, Any],
    predicate: Callable[[str], bool],
) -> AttributeMap:
    """
    Collect the fields of a document whose name satisfies ``predicate``.

    Each retained field maps to a list of values, so single-valued and
    multi-valued attributes can be released the same way. Field order
    follows the document.

    Example:
        >>> collect_attributes({"email": "a@x.com", "age": 3}, lambda n: n.startswith("e"))
        {'email': ['a@x.com']}
    """
    return {
        name: wrap_values(value)
        for name, value in document.items()
        if predicate(name)
    }

"""
Forwarding address model.

An Address is a single port-forwarding rule, either desired (supplied by a
caller) or observed (reported by the router). A ScopeKey identifies the
router partition (e.g. a UniFi site) the rule lives in.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Mapping, Optional, Tuple

MIN_PORT = 1
MAX_PORT = 65535

# Router-side spelling of an unrestricted source range
ANY_SOURCE = "any"


@dataclass(frozen=True)
class ScopeKey:
    """
    Immutable, order-independent partition key.

    Built from a flat string mapping; two keys built from the same items
    compare and hash equal regardless of insertion order.
    """

    items: FrozenSet[Tuple[str, str]] = frozenset()

    @classmethod
    def from_mapping(cls, mapping: Optional[Mapping[str, str]] = None) -> "ScopeKey":
        """Build a key from a ``str -> str`` mapping (``None`` means empty)."""
        if not mapping:
            return cls()
        return cls(frozenset((str(k), str(v)) for k, v in mapping.items()))

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        for k, v in self.items:
            if k == key:
                return v
        return default

    def as_dict(self) -> Dict[str, str]:
        return dict(sorted(self.items))

    def __bool__(self) -> bool:
        return bool(self.items)

    def __str__(self) -> str:
        if not self.items:
            return "<default>"
        return ",".join(f"{k}={v}" for k, v in sorted(self.items))


@dataclass(frozen=True)
class Address:
    """A port-forwarding rule."""

    name: str
    port: int
    ip: str
    source_range: str = ""
    options: ScopeKey = field(default_factory=ScopeKey)

    def __post_init__(self):
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise ValueError(f"Port must be an integer, got {self.port!r}")
        if not MIN_PORT <= self.port <= MAX_PORT:
            raise ValueError(
                f"Port {self.port} out of range ({MIN_PORT}-{MAX_PORT})"
            )


def same_rule(a: Address, b: Address) -> bool:
    """Field-wise equality of two full rule records."""
    return (
        a.name == b.name
        and a.port == b.port
        and a.ip == b.ip
        and a.source_range == b.source_range
        and a.options == b.options
    )

"""
Rule naming.

Router rules carry nothing but a flat name, so the name is what ties an
observed rule back to the address that created it:
``<prefix><name>-<port>``.
"""

from dataclasses import replace

from forwarding.address import Address


def qualify(address: Address, prefix: str) -> Address:
    """Return a copy of ``address`` with ``prefix`` prepended to its name."""
    return replace(address, name=f"{prefix}{address.name}")


def with_port_suffix(address: Address) -> Address:
    """Return a copy of ``address`` with ``-<port>`` appended to its name."""
    return replace(address, name=f"{address.name}-{address.port}")


def qualified_name(address: Address, prefix: str) -> str:
    return with_port_suffix(qualify(address, prefix)).name

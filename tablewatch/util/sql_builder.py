"""
SQL builder utilities to help generate safe SQL fragments.
Values always travel as statement parameters; only identifiers are inlined.
"""


def quote_ident(name: str) -> str:
    """Quote an identifier so names like "Last Modified" are usable."""
    if not name or "\x00" in name:
        raise ValueError(f"Unsafe identifier: {name!r}")
    return '"' + name.replace('"', '""') + '"'

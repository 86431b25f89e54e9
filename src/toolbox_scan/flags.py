"""Command-line flag composition.

Default flags from a ToolSpec are combined with per-request overrides.  An
override replaces a default with the same key instead of merging with it, and
the last occurrence of a key wins.  A key is a token starting with ``-``; the
tokens following it up to the next key are its values.  ``--key=value`` is
treated as key ``--key``.
"""

from __future__ import annotations

import re
from collections.abc import Sequence

_NUMBER_RE = re.compile(r"^-\d+(\.\d+)?$")


def _is_key(token: str) -> bool:
    return token.startswith("-") and token != "-" and not _NUMBER_RE.match(token)


def flag_key(token: str) -> str:
    return token.split("=", 1)[0]


def group_flags(tokens: Sequence[str]) -> list[tuple[str | None, list[str]]]:
    """Split *tokens* into ``(key, [tokens])`` groups; key is None for leading positionals."""
    groups: list[tuple[str | None, list[str]]] = []
    for token in tokens:
        if _is_key(token):
            groups.append((flag_key(token), [token]))
        elif groups and groups[-1][0] is not None:
            groups[-1][1].append(token)
        else:
            groups.append((None, [token]))
    return groups


def merge_flags(defaults: Sequence[str], overrides: Sequence[str]) -> list[str]:
    """Combine *defaults* and *overrides*; the last group for each key wins."""
    groups = group_flags(defaults) + group_flags(overrides)
    last_index = {key: i for i, (key, _) in enumerate(groups) if key is not None}

    merged: list[str] = []
    for i, (key, tokens) in enumerate(groups):
        if key is not None and last_index[key] != i:
            continue
        merged.extend(tokens)
    return merged

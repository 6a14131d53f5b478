"""
Account tree -- pure hierarchy helpers for the chart of accounts.

Responsibility:
    Accounts live in a flat id-indexed arena; children are computed from
    parent_id on demand and never stored.  This module turns such an arena
    into a nested tree, walks ancestors, detects cycles and collects the
    sub accounts below a main account.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Operates on
    AccountInfo DTOs only.

Invariants enforced:
    - build_tree output is sorted by code at every level and does not depend
      on input order.
    - Ancestor walks terminate even on corrupt (cyclic) data.
"""

from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from ledger_kernel.domain.dtos import AccountInfo

_DIGITS = re.compile(r"(\d+)")


def code_sort_key(code: str) -> tuple:
    """Natural sort key: numeric runs compare as numbers, so "2" < "10"."""
    return tuple(
        (0, int(part), "") if part.isdigit() else (1, 0, part)
        for part in _DIGITS.split(code)
        if part
    )


def _node_key(account: AccountInfo) -> tuple:
    return (code_sort_key(account.code), account.id)


@dataclass(frozen=True)
class AccountNode:
    """One account and its computed children."""

    account: AccountInfo
    children: tuple[AccountNode, ...] = field(default_factory=tuple)

    def walk(self) -> Iterable[AccountNode]:
        """Depth-first, pre-order."""
        yield self
        for child in self.children:
            yield from child.walk()

    def to_dict(self) -> dict:
        return {
            "id": self.account.id,
            "code": self.account.code,
            "name": self.account.name,
            "name_en": self.account.name_en,
            "level": self.account.level,
            "nature": self.account.nature,
            "children": [child.to_dict() for child in self.children],
        }


def children_index(accounts: Iterable[AccountInfo]) -> dict[int | None, list[AccountInfo]]:
    index: dict[int | None, list[AccountInfo]] = defaultdict(list)
    for account in accounts:
        index[account.parent_id].append(account)
    return index


def build_tree(accounts: Iterable[AccountInfo]) -> list[AccountNode]:
    """
    Nest a flat list of accounts under their parents.

    Accounts whose parent is not in the input are treated as roots, so a
    filtered slice of the chart still renders.  Siblings are ordered by
    code (natural order) then id.
    """
    accounts = list(accounts)
    by_id = {account.id: account for account in accounts}
    index: dict[int | None, list[AccountInfo]] = defaultdict(list)
    for account in accounts:
        parent = account.parent_id if account.parent_id in by_id else None
        index[parent].append(account)

    visited: set[int] = set()

    def _build(account: AccountInfo) -> AccountNode:
        visited.add(account.id)
        children = tuple(
            _build(child)
            for child in sorted(index.get(account.id, ()), key=_node_key)
            if child.id not in visited
        )
        return AccountNode(account=account, children=children)

    roots = [_build(account) for account in sorted(index.get(None, ()), key=_node_key)]

    # Members of a parent cycle are unreachable from any root
    stranded = sorted((a for a in accounts if a.id not in visited), key=_node_key)
    for account in stranded:
        if account.id not in visited:
            roots.append(_build(account))
    return roots


def ancestors(account_id: int | None, parent_of: Mapping[int, int | None]) -> list[int]:
    """
    Ids from account_id's parent up to the root, nearest first.

    Stops at the first repeated id so corrupt data cannot loop forever.
    """
    result: list[int] = []
    seen: set[int] = set()
    current = parent_of.get(account_id) if account_id is not None else None
    while current is not None and current not in seen:
        seen.add(current)
        result.append(current)
        current = parent_of.get(current)
    return result


def would_create_cycle(
    account_id: int,
    new_parent_id: int | None,
    parent_of: Mapping[int, int | None],
) -> bool:
    """
    True if making new_parent_id the parent of account_id closes a loop.

    Walks from new_parent_id up through its ancestors; meeting account_id
    (including new_parent_id == account_id) means a cycle.
    """
    if new_parent_id is None:
        return False
    if new_parent_id == account_id:
        return True
    return account_id in ancestors(new_parent_id, parent_of)


def descendants(root_id: int, accounts: Iterable[AccountInfo]) -> list[AccountInfo]:
    """Every account strictly below root_id, in tree order."""
    index = children_index(accounts)
    result: list[AccountInfo] = []
    seen: set[int] = {root_id}
    stack = sorted(index.get(root_id, ()), key=_node_key, reverse=True)
    while stack:
        account = stack.pop()
        if account.id in seen:
            continue
        seen.add(account.id)
        result.append(account)
        stack.extend(sorted(index.get(account.id, ()), key=_node_key, reverse=True))
    return result


def sub_accounts_under(root_id: int, accounts: Iterable[AccountInfo]) -> list[AccountInfo]:
    """Postable (sub) accounts anywhere below root_id."""
    return [account for account in descendants(root_id, accounts) if account.is_sub]


def next_child_code(parent_code: str, sibling_codes: Iterable[str]) -> str:
    """
    parent_code followed by the next free two-digit ordinal.

    >>> next_child_code("1", ["101", "102"])
    '103'
    """
    used = set()
    for code in sibling_codes:
        suffix = code[len(parent_code):] if code.startswith(parent_code) else ""
        if suffix.isdigit():
            used.add(int(suffix))
    ordinal = max(used, default=0) + 1
    return f"{parent_code}{ordinal:02d}"


def next_root_code(root_codes: Iterable[str]) -> str:
    """Next integer code after the largest numeric root code."""
    numeric = [int(code) for code in root_codes if code.isdigit()]
    return str(max(numeric, default=0) + 1)

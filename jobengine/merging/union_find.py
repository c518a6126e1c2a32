"""Union-find over candidate identities and the merge plan built on it."""

from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Sequence


class UnionFind:
    def __init__(self, ids: Iterable[str] = ()):
        self._parent: Dict[str, str] = {i: i for i in ids}

    def add(self, item: str) -> None:
        self._parent.setdefault(item, item)

    def find(self, item: str) -> str:
        """Root of ``item``'s group, compressing the path on the way."""
        self.add(item)
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, a: str, b: str) -> str:
        """Attach b's root under a's root. Returns the surviving root."""
        root_a, root_b = self.find(a), self.find(b)
        if root_a != root_b:
            self._parent[root_b] = root_a
        return root_a

    def is_root(self, item: str) -> bool:
        return self.find(item) == item

    def groups(self) -> Dict[str, List[str]]:
        """Root -> members (root first, then the rest in insertion order)."""
        out: Dict[str, List[str]] = {}
        for item in self._parent:
            out.setdefault(self.find(item), [])
        for item in self._parent:
            root = self.find(item)
            if item != root:
                out[root].append(item)
        return {root: [root] + members for root, members in out.items()}


@dataclass
class Candidate:
    id: str
    item_count: int
    representative: str = ""
    gender: str = ""


def order_candidates(candidates: Sequence[Candidate]) -> List[Candidate]:
    """Largest group first; ties keep their input order."""
    return sorted(candidates, key=lambda c: -c.item_count)


SameFn = Callable[[Candidate, Candidate], Awaitable[bool]]


async def compare_outer(
    uf: UnionFind,
    ordered: Sequence[Candidate],
    index: int,
    same: SameFn,
) -> List[str]:
    """Compare ``ordered[index]`` with every later live root.

    Returns the ids absorbed into it. Absorbed candidates are never
    compared again, so the result does not depend on which pairs a judge
    happens to see first within a group.
    """
    outer = ordered[index]
    if not uf.is_root(outer.id):
        return []
    absorbed = []
    for inner in ordered[index + 1:]:
        if not uf.is_root(inner.id):
            continue
        if await same(outer, inner):
            uf.union(outer.id, inner.id)
            absorbed.append(inner.id)
    return absorbed


async def plan_merges(candidates: Sequence[Candidate], same: SameFn) -> Dict[str, List[str]]:
    """Full comparison in one go. Returns root -> members for every group."""
    ordered = order_candidates(candidates)
    uf = UnionFind(c.id for c in ordered)
    for index in range(len(ordered)):
        await compare_outer(uf, ordered, index, same)
    return uf.groups()

"""
Discover card-to-card references and resolve their dependency order.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict, deque
from typing import Any, Dict, Iterable, List, Set

from .models import Card

logger = logging.getLogger(__name__)

CARD_REF_PATTERN = re.compile(r"^card__(\d+)$")


class CyclicDependencyError(Exception):
    def __init__(self, cards):
        # type: (Iterable[int]) -> None
        self.cards = sorted(cards)
        super(CyclicDependencyError, self).__init__(
            "Cyclic dependency detected among cards: {}".format(self.cards)
        )


def extract_card_references(query):
    # type: (Any) -> Set[int]
    """Collect every card id referenced anywhere in a dataset query.

    Structured queries embed ``"card__<id>"`` as a source table. Native
    queries declare referenced cards as template tags of type ``card`` with
    a ``card-id``. Anything else is skipped, so malformed input simply
    yields fewer references.
    """
    refs = set()  # type: Set[int]
    stack = [query]  # type: List[Any]
    while stack:
        node = stack.pop()
        if isinstance(node, str):
            m = CARD_REF_PATTERN.match(node)
            if m:
                refs.add(int(m.group(1)))
        elif isinstance(node, dict):
            if node.get("type") == "card" and isinstance(node.get("card-id"), int):
                refs.add(node["card-id"])
            stack.extend(node.values())
        elif isinstance(node, (list, tuple)):
            stack.extend(node)
    return refs


def build_reverse_graph(cards):
    # type: (Iterable[Card]) -> Dict[int, List[int]]
    """Map each provider card to the cards that consume it.

    Every observed card id is a key, including referenced ids that were not
    in ``cards`` themselves.
    """
    reverse = {}  # type: Dict[int, List[int]]
    for card in cards:
        reverse.setdefault(card.id, [])
        for provider in sorted(extract_card_references(card.dataset_query)):
            reverse.setdefault(provider, []).append(card.id)
    return reverse


class DependencyGraph:
    def __init__(self, cards):
        # type: (Iterable[Card]) -> None
        self.cards = {c.id: c for c in cards}  # type: Dict[int, Card]
        self.forward = {}  # type: Dict[int, Set[int]]
        for card in self.cards.values():
            self.forward[card.id] = extract_card_references(card.dataset_query)
        self.reverse = build_reverse_graph(self.cards.values())

    def dependencies(self, card_id):
        # type: (int) -> Set[int]
        return set(self.forward.get(card_id, ()))

    def dependents(self, card_id):
        # type: (int) -> List[int]
        return list(self.reverse.get(card_id, ()))

    def migration_order(self):
        # type: () -> List[int]
        """Topological order, providers first. Raises on cycles."""
        all_cards = set(self.cards)
        in_degree = {c: 0 for c in all_cards}  # type: Dict[int, int]
        reverse = defaultdict(set)  # type: Dict[int, Set[int]]

        for card_id, deps in self.forward.items():
            for dep in deps:
                if dep in all_cards:
                    in_degree[card_id] += 1
                    reverse[dep].add(card_id)

        queue = deque(sorted(c for c in all_cards if in_degree[c] == 0))
        order = []  # type: List[int]
        while queue:
            current = queue.popleft()
            order.append(current)
            for dependent in sorted(reverse.get(current, [])):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(order) != len(all_cards):
            raise CyclicDependencyError(all_cards - set(order))
        return order

    def cyclic_cards(self):
        # type: () -> Set[int]
        try:
            self.migration_order()
        except CyclicDependencyError as e:
            return set(e.cards)
        return set()

    def get_upstream(self, card_id):
        # type: (int) -> List[int]
        """Transitive providers of ``card_id``, deepest first."""
        visited = set()  # type: Set[int]
        order = []  # type: List[int]

        def dfs(cid):
            # type: (int) -> None
            if cid in visited:
                return
            visited.add(cid)
            for dep in sorted(self.forward.get(cid, ())):
                dfs(dep)
            order.append(cid)

        dfs(card_id)
        return order[:-1]

    def blocked_cards(self, seeds, migrated):
        # type: (Iterable[int], Set[int]) -> Set[int]
        """Multi-source BFS over consumers of the seed cards.

        Seeds that are not migrated are blocked themselves. Any consumer
        reached that is not migrated becomes blocked too; migrated cards stop
        the propagation.
        """
        blocked = set()  # type: Set[int]
        queue = deque()  # type: deque
        for seed in seeds:
            if seed not in migrated and seed not in blocked:
                blocked.add(seed)
                queue.append(seed)

        while queue:
            current = queue.popleft()
            for consumer in self.reverse.get(current, ()):
                if consumer in blocked or consumer in migrated:
                    continue
                blocked.add(consumer)
                queue.append(consumer)

        logger.debug("Propagated on-hold status to %d cards", len(blocked))
        return blocked

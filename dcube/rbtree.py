"""Red-black tree that aggregates measures of rows sharing a key."""

from __future__ import annotations

from enum import IntEnum
from typing import Iterator, Sequence

from dcube.records import DIM_FSZ, MSR_FSZ, get_rec_size

# Two child links, a colour word with padding and the first measure slot.
NODE_HEADER_SIZE = 32


class Color(IntEnum):
    """Node colour."""

    BLACK = 0
    RED = 1


class _Node:
    __slots__ = ("key", "measures", "left", "right", "color")

    def __init__(self, key: tuple[int, ...], measures: list[int], color: Color):
        self.key = key
        self.measures = measures
        self.left: _Node | None = None
        self.right: _Node | None = None
        self.color = color


class AggregateTree:
    """Ordered set of keys, each holding the sums of the measures inserted with it.

    Node storage is accounted against ``memory_limit``; ``memory_is_full``
    turns true once the last node that fits has been used.
    """

    def __init__(self, nd: int, nm: int, memory_limit: int):
        if memory_limit < 0:
            raise ValueError("memory limit must not be negative")
        self.memory_limit = memory_limit
        self.reset(nd, nm)

    def reset(self, nd: int, nm: int) -> None:
        """Empty the tree and size its nodes for ``nd`` dimensions and ``nm`` measures."""
        if nd < 0 or nm < 0:
            raise ValueError("dimension and measure counts must not be negative")
        self.nd = nd
        self.nm = nm
        size = NODE_HEADER_SIZE + DIM_FSZ * (nd - 1) + MSR_FSZ * nm
        if size % 8:
            size += 4
        self.node_size = size
        self.node_data_size = get_rec_size(nd, nm)
        self.nodes_limit = self.memory_limit // size
        self.free_node_counter = self.nodes_limit
        self.memory_is_full = False
        self._head = _Node((), [], Color.BLACK)
        self._count = 0

    @property
    def root(self) -> _Node | None:
        """Top node of the tree, or None when empty."""
        return self._head.left

    def _new_node(self, key: tuple[int, ...], measures: Sequence[int], color: Color) -> _Node:
        self._count += 1
        self.free_node_counter -= 1
        if self.free_node_counter == 0:
            self.memory_is_full = True
        return _Node(key, list(measures), color)

    def insert(self, measures: Sequence[int], key: Sequence[int]) -> None:
        """Add ``measures`` under ``key``, creating the key if it is new."""
        key = tuple(key)
        if len(key) != self.nd:
            raise ValueError(f"key of length {len(key)}, expected {self.nd}")
        if len(measures) != self.nm:
            raise ValueError(f"{len(measures)} measures, expected {self.nm}")

        head = self._head
        x = head.left
        if x is None:
            head.left = self._new_node(key, measures, Color.BLACK)
            return

        nodes: list[_Node] = [head]
        dirs: list[int] = [0]
        while True:
            if key < x.key:
                nodes.append(x)
                dirs.append(0)
                if x.left is None:
                    x.left = self._new_node(key, measures, Color.RED)
                    break
                x = x.left
            elif key > x.key:
                nodes.append(x)
                dirs.append(1)
                if x.right is None:
                    x.right = self._new_node(key, measures, Color.RED)
                    break
                x = x.right
            else:
                for i, value in enumerate(measures):
                    x.measures[i] += value
                return

        sl = len(nodes)
        while sl >= 3 and nodes[sl - 1].color == Color.RED:
            grand = nodes[sl - 2]
            if dirs[sl - 2] == 0:
                uncle = grand.right
                if uncle is not None and uncle.color == Color.RED:
                    nodes[sl - 1].color = Color.BLACK
                    uncle.color = Color.BLACK
                    grand.color = Color.RED
                    sl -= 2
                    continue
                if dirs[sl - 1] == 1:
                    parent = nodes[sl - 1]
                    pivot = parent.right
                    parent.right = pivot.left
                    pivot.left = parent
                    grand.left = pivot
                else:
                    pivot = nodes[sl - 1]
                grand.color = Color.RED
                pivot.color = Color.BLACK
                grand.left = pivot.right
                pivot.right = grand
            else:
                uncle = grand.left
                if uncle is not None and uncle.color == Color.RED:
                    nodes[sl - 1].color = Color.BLACK
                    uncle.color = Color.BLACK
                    grand.color = Color.RED
                    sl -= 2
                    continue
                if dirs[sl - 1] == 0:
                    parent = nodes[sl - 1]
                    pivot = parent.left
                    parent.left = pivot.right
                    pivot.right = parent
                    grand.right = pivot
                else:
                    pivot = nodes[sl - 1]
                grand.color = Color.RED
                pivot.color = Color.BLACK
                grand.right = pivot.left
                pivot.left = grand
            if dirs[sl - 3]:
                nodes[sl - 3].right = pivot
            else:
                nodes[sl - 3].left = pivot
            break
        head.left.color = Color.BLACK

    def __iter__(self) -> Iterator[tuple[tuple[int, ...], tuple[int, ...]]]:
        """Yield ``(measures, key)`` in ascending key order."""
        stack: list[_Node] = []
        node = self._head.left
        while stack or node is not None:
            while node is not None:
                stack.append(node)
                node = node.left
            node = stack.pop()
            yield tuple(node.measures), node.key
            node = node.right

    def __len__(self) -> int:
        return self._count
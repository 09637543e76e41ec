"""
UI affordance registry

The action queue drives an external UI through named selectors. This module
defines that boundary and a static in-memory registry that records every
interaction, for headless runs and tests.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class UiAffordance:
    """One externally-triggerable element."""
    selector: str
    description: str
    kind: str = "button"  # button, input, select
    options: list[str] = field(default_factory=list)
    value: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"selector": self.selector, "description": self.description, "kind": self.kind}
        if self.options:
            data["options"] = list(self.options)
        return data


class UiAffordances(ABC):
    """Interface the action queue uses to act on the UI."""

    @abstractmethod
    def describe(self) -> str:
        """JSON description of interactable elements, for the planner prompt."""
        pass

    @abstractmethod
    def resolve(self, selector: str) -> Optional[UiAffordance]:
        pass

    @abstractmethod
    async def click(self, selector: str) -> None:
        pass

    @abstractmethod
    async def set_value(self, selector: str, value: str) -> None:
        pass

    @abstractmethod
    async def select_option(self, selector: str, value: str) -> None:
        pass


class StaticUiAffordances(UiAffordances):
    """
    Fixed set of affordances. Interactions are appended to `interactions`
    as (verb, selector, value) tuples.
    """

    def __init__(self, affordances: Optional[list[UiAffordance]] = None):
        self.affordances = {a.selector: a for a in affordances or []}
        self.interactions: list[tuple[str, str, Optional[str]]] = []

    def add(self, affordance: UiAffordance):
        self.affordances[affordance.selector] = affordance

    def describe(self) -> str:
        return json.dumps([a.to_dict() for a in self.affordances.values()], indent=2)

    def resolve(self, selector: str) -> Optional[UiAffordance]:
        return self.affordances.get(selector)

    def _require(self, selector: str, kind: Optional[str] = None) -> UiAffordance:
        affordance = self.resolve(selector)
        if affordance is None:
            raise LookupError(f"Element with selector '{selector}' not found")
        if kind and affordance.kind != kind:
            raise LookupError(f"Element '{selector}' is a {affordance.kind}, not a {kind}")
        return affordance

    async def click(self, selector: str) -> None:
        self._require(selector)
        self.interactions.append(("click", selector, None))

    async def set_value(self, selector: str, value: str) -> None:
        self._require(selector, "input").value = value
        self.interactions.append(("set_value", selector, value))

    async def select_option(self, selector: str, value: str) -> None:
        affordance = self._require(selector, "select")
        if affordance.options and value not in affordance.options:
            raise LookupError(f"Option '{value}' not available in '{selector}'")
        affordance.value = value
        self.interactions.append(("select_option", selector, value))

"""Card reveal conditions and the locked -> unlocked -> completed progression."""

import logging
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Literal

from pydantic import BaseModel, model_validator

from .evaluator import EvalError, Scalar, as_bindings
from .tables import condition_holds

logger = logging.getLogger(__name__)


class CardStateError(Exception):
    pass


class CardState(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    COMPLETED = "completed"


class RevealCondition(BaseModel):
    type: Literal["always", "previousCardComplete", "expression"] = "always"
    expression: str | None = None

    @model_validator(mode="after")
    def _expression_required(self) -> "RevealCondition":
        if self.type == "expression" and not self.expression:
            raise ValueError("expression reveal condition needs an expression")
        return self


class Card(BaseModel):
    id: str
    order: int
    reveal: RevealCondition = RevealCondition()


def _predecessor(card: Card, cards: list[Card]) -> Card | None:
    ordered = sorted(cards, key=lambda c: c.order)
    index = next((i for i, c in enumerate(ordered) if c.id == card.id), None)
    if index is None:
        raise CardStateError(f"unknown card: {card.id}")
    return ordered[index - 1] if index > 0 else None


def is_revealed(
    card: Card,
    cards: Iterable[Card],
    completed: Iterable[str],
    bindings: Mapping[str, Scalar] | None = None,
) -> bool:
    """Whether a card's reveal condition currently holds.

    ``expression`` conditions see the field bindings (boolean-coerced by the
    condition) plus one ``card_<id>_complete`` flag per card.
    """
    cards = list(cards)
    done = set(completed)

    match card.reveal.type:
        case "always":
            return True
        case "previousCardComplete":
            previous = _predecessor(card, cards)
            return previous is None or previous.id in done
        case "expression":
            flags = {f"card_{c.id}_complete": c.id in done for c in cards}
            scope = as_bindings(bindings).merged(flags)
            try:
                return condition_holds(card.reveal.expression, scope)
            except EvalError as e:
                logger.debug("card %s stays hidden: %s", card.id, e)
                return False
        case _:
            raise CardStateError(f"unknown reveal condition: {card.reveal.type}")


class CardProgression:
    """State machine over a form's cards.

    Cards move ``locked -> unlocked`` when their reveal condition first holds
    and ``unlocked -> completed`` when the user advances past them. Nothing
    ever moves back to ``locked``; ``revisit`` is the explicit navigation that
    reopens a completed card.
    """

    def __init__(self, cards: Iterable[Card]):
        self.cards = sorted(cards, key=lambda c: c.order)
        ids = [c.id for c in self.cards]
        if len(ids) != len(set(ids)):
            raise CardStateError("duplicate card ids")
        self._states = {c.id: CardState.LOCKED for c in self.cards}

    def state(self, card_id: str) -> CardState:
        try:
            return self._states[card_id]
        except KeyError:
            raise CardStateError(f"unknown card: {card_id}") from None

    @property
    def completed(self) -> set[str]:
        return {cid for cid, s in self._states.items() if s is CardState.COMPLETED}

    def states(self) -> dict[str, CardState]:
        return dict(self._states)

    def refresh(self, bindings: Mapping[str, Scalar] | None = None) -> list[str]:
        """Unlock every locked card whose reveal condition now holds.

        Returns the ids unlocked by this call.
        """
        unlocked = []
        for card in self.cards:
            if self._states[card.id] is not CardState.LOCKED:
                continue
            if is_revealed(card, self.cards, self.completed, bindings):
                self._states[card.id] = CardState.UNLOCKED
                unlocked.append(card.id)
                logger.debug("card unlocked: %s", card.id)
        return unlocked

    def complete(self, card_id: str, bindings: Mapping[str, Scalar] | None = None) -> list[str]:
        """Mark an unlocked card completed, then unlock whatever that reveals."""
        state = self.state(card_id)
        if state is not CardState.UNLOCKED:
            raise CardStateError(f"card {card_id} is {state.value}, not unlocked")
        self._states[card_id] = CardState.COMPLETED
        logger.debug("card completed: %s", card_id)
        return self.refresh(bindings)

    def revisit(self, card_id: str) -> None:
        """Explicit navigation back to a completed card."""
        state = self.state(card_id)
        if state is CardState.LOCKED:
            raise CardStateError(f"card {card_id} is locked")
        self._states[card_id] = CardState.UNLOCKED

    def visible(self) -> list[str]:
        return [c.id for c in self.cards if self._states[c.id] is not CardState.LOCKED]


"""Card reveal and progression tests."""

import pytest
from pydantic import ValidationError

from formula_engine.reveal import Card, CardProgression, CardState, CardStateError, RevealCondition, is_revealed


def card(card_id, order, kind="previousCardComplete", expression=None):
    return Card(id=card_id, order=order, reveal=RevealCondition(type=kind, expression=expression))


@pytest.fixture
def cards():
    return [
        card("house", 1),
        card("heating", 2),
        card("oil_tank", 3, "expression", "heating_type == 'oil' and card_heating_complete"),
        card("contact", 4, "always"),
    ]


class TestIsRevealed:
    def test_first_card_has_no_predecessor(self, cards):
        assert is_revealed(cards[0], cards, completed=[])

    def test_previous_card_complete(self, cards):
        assert not is_revealed(cards[1], cards, completed=[])
        assert is_revealed(cards[1], cards, completed=["house"])

    def test_always(self, cards):
        assert is_revealed(cards[3], cards, completed=[])

    def test_expression(self, cards):
        assert not is_revealed(cards[2], cards, ["house", "heating"], {"heating_type": "gas"})
        assert is_revealed(cards[2], cards, ["house", "heating"], {"heating_type": "oil"})
        assert not is_revealed(cards[2], cards, ["house"], {"heating_type": "oil"})

    def test_expression_on_missing_field_stays_hidden(self, cards):
        assert not is_revealed(cards[2], cards, ["house", "heating"], {})

    def test_card_not_in_list(self, cards):
        with pytest.raises(CardStateError, match="unknown card: stray"):
            is_revealed(card("stray", 9), cards, completed=[])

    def test_expression_required(self):
        with pytest.raises(ValidationError):
            RevealCondition(type="expression")


class TestCardProgression:
    def test_initial_refresh(self, cards):
        progression = CardProgression(cards)
        assert progression.refresh() == ["house", "contact"]
        assert progression.state("heating") is CardState.LOCKED

    def test_complete_unlocks_next(self, cards):
        progression = CardProgression(cards)
        progression.refresh()
        assert progression.complete("house") == ["heating"]
        assert progression.state("house") is CardState.COMPLETED

    def test_expression_card_follows_bindings(self, cards):
        progression = CardProgression(cards)
        progression.refresh()
        progression.complete("house")
        assert progression.complete("heating", {"heating_type": "oil"}) == ["oil_tank"]
        assert progression.visible() == ["house", "heating", "oil_tank", "contact"]

    def test_cannot_complete_locked(self, cards):
        progression = CardProgression(cards)
        progression.refresh()
        with pytest.raises(CardStateError):
            progression.complete("heating")

    def test_cannot_complete_twice(self, cards):
        progression = CardProgression(cards)
        progression.refresh()
        progression.complete("house")
        with pytest.raises(CardStateError):
            progression.complete("house")

    def test_never_relocks(self, cards):
        progression = CardProgression(cards)
        progression.refresh()
        progression.complete("house")
        progression.complete("heating", {"heating_type": "oil"})
        # the answer changing later does not hide an unlocked card
        progression.refresh({"heating_type": "gas"})
        assert progression.state("oil_tank") is CardState.UNLOCKED

    def test_revisit(self, cards):
        progression = CardProgression(cards)
        progression.refresh()
        progression.complete("house")
        progression.revisit("house")
        assert progression.state("house") is CardState.UNLOCKED
        assert progression.state("heating") is CardState.UNLOCKED

    def test_revisit_locked(self, cards):
        progression = CardProgression(cards)
        with pytest.raises(CardStateError):
            progression.revisit("heating")

    def test_unknown_card(self, cards):
        with pytest.raises(CardStateError):
            CardProgression(cards).state("nope")

    def test_duplicate_ids(self):
        with pytest.raises(CardStateError):
            CardProgression([card("a", 1), card("a", 2)])

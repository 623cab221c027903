import pytest

from sharad.dispatcher import Dispatcher
from sharad.models import FunctionCallCandidate
from sharad.parser import parse_response


def _c(name, /, **arguments):
    return FunctionCallCandidate(name=name, arguments=arguments)


@pytest.fixture
def dispatch(registry):
    def run(store, *candidates):
        return Dispatcher(registry, store).dispatch(candidates)
    return run


# ── Rejection reasons ───────────────────────────────────────


def test_unknown_function(dispatch, store):
    report = dispatch(store, _c("cast_fireball", target="Rin"))
    cand = report.candidates[0]
    assert cand.reason == "unknown_function"
    assert report.state is store.snapshot()


def test_bad_parameters_names_the_parameter(dispatch, rin_store):
    report = dispatch(rin_store, _c("adjust_attribute", character="Rin", attribute="hp"))
    assert report.candidates[0].reason == "bad_parameters"
    assert report.candidates[0].detail == "delta: missing"


def test_missing_character_is_invalid_reference(dispatch, store):
    report = dispatch(store, _c("add_item", character="Ghost", item="sword"))
    cand = report.candidates[0]
    assert cand.reason == "invalid_reference"
    assert "Ghost" in cand.detail
    assert store.snapshot().items == {}


def test_existing_character_cannot_be_created_again(dispatch, rin_store):
    report = dispatch(rin_store, _c("create_character", name="Rin"))
    assert report.candidates[0].reason == "invalid_reference"


def test_inactive_character_is_invalid_reference(dispatch, store):
    dispatch(store, _c("create_character", name="Ghost"), _c("deactivate_character", character="Ghost"))
    report = dispatch(store, _c("set_attribute", character="Ghost", attribute="hp", value=1))
    assert report.candidates[0].reason == "invalid_reference"
    assert "inactive" in report.candidates[0].detail


def test_item_must_be_held_by_named_character(dispatch, rin_store):
    dispatch(rin_store, _c("create_character", name="Tom"))
    report = dispatch(rin_store, _c("remove_item", item="sword", character="Tom"))
    assert report.candidates[0].reason == "invalid_reference"
    assert "sword" in rin_store.snapshot().items


def test_transfer_to_current_owner_is_invalid_reference(dispatch, rin_store):
    report = dispatch(rin_store, _c("transfer_item", item="sword", to="Rin"))
    assert report.candidates[0].reason == "invalid_reference"


def test_malformed_candidates_are_left_alone(dispatch, store):
    parsed = parse_response('add_item("sword")')
    report = dispatch(store, *parsed.candidates)
    assert report.candidates[0].reason == "malformed"
    assert report.applied == []


# ── Ordering law ────────────────────────────────────────────


def test_later_call_sees_earlier_creation(dispatch, store):
    report = dispatch(
        store,
        _c("create_character", name="Rin"),
        _c("add_item", character="Rin", item="sword"),
    )
    assert [c.status for c in report.candidates] == ["applied", "applied"]
    state = store.snapshot()
    assert state.characters["rin"].inventory == ["sword"]
    assert state.items["sword"].owner == "rin"


def test_earlier_call_does_not_see_later_creation(dispatch, store):
    report = dispatch(
        store,
        _c("add_item", character="Rin", item="sword"),
        _c("create_character", name="Rin"),
    )
    assert [c.status for c in report.candidates] == ["rejected", "applied"]
    assert report.candidates[0].reason == "invalid_reference"
    assert store.snapshot().characters["rin"].inventory == []


def test_item_ids_are_unique_within_a_batch(dispatch, rin_store):
    dispatch(rin_store, _c("add_item", item="sword"), _c("add_item", item="Sword", character="Rin"))
    items = rin_store.snapshot().items
    assert sorted(items) == ["sword", "sword-2", "sword-3"]
    assert rin_store.snapshot().characters["rin"].inventory == ["sword", "sword-3"]


def test_rejections_do_not_block_valid_calls(dispatch, rin_store):
    report = dispatch(
        rin_store,
        _c("adjust_attribute", character="Rin", attribute="hp", delta=-4),
        _c("add_item", character="Ghost", item="lamp"),
        _c("set_flag", key="storm", value=True),
    )
    assert [c.status for c in report.candidates] == ["applied", "rejected", "applied"]
    state = rin_store.snapshot()
    assert state.characters["rin"].attributes["hp"] == 6
    assert state.flags == {"storm": True}


# ── Conflicts ───────────────────────────────────────────────


def test_duplicate_creation_is_a_conflict_and_the_rest_commits(dispatch, store):
    report = dispatch(
        store,
        _c("create_character", name="Tom"),
        _c("create_character", name="Tom"),
        _c("set_flag", key="met_tom", value=True),
    )
    assert [c.status for c in report.candidates] == ["applied", "rejected", "applied"]
    assert report.candidates[1].reason == "conflict"
    assert report.conflict is None
    assert store.snapshot().flags == {"met_tom": True}


def test_deactivating_a_holder_conflicts(dispatch, rin_store):
    report = dispatch(
        rin_store,
        _c("deactivate_character", character="Rin"),
        _c("set_flag", key="dusk", value=True),
    )
    assert report.candidates[0].reason == "conflict"
    assert "still holds items" in report.candidates[0].detail
    assert report.candidates[1].applied
    assert rin_store.snapshot().characters["rin"].active


def test_second_conflict_aborts_the_batch(dispatch, store):
    before = store.snapshot()
    report = dispatch(
        store,
        _c("create_character", name="Tom"),
        _c("create_character", name="Tom"),
        _c("create_character", name="Tom"),
    )
    assert [c.reason for c in report.candidates] == ["aborted", "conflict", "conflict"]
    assert report.conflict is not None
    assert store.snapshot() is before
    assert report.applied == []

"""
Tests for directional blocks.
"""

import pytest

from conftest import ALICE, BOB, CAROL
from wachat import block_registry
from wachat.errors import AlreadyBlocked, NotBlocked, ValidationError


def test_block_is_checked_in_both_directions(db):
    block_registry.block(db, ALICE, BOB, "spam")
    assert block_registry.is_blocked_either_direction(db, ALICE, BOB)
    assert block_registry.is_blocked_either_direction(db, BOB, ALICE)
    assert not block_registry.is_blocked_either_direction(db, ALICE, CAROL)


def test_block_twice(db):
    block_registry.block(db, ALICE, BOB)
    with pytest.raises(AlreadyBlocked):
        block_registry.block(db, ALICE, BOB)


def test_reverse_block_is_a_separate_relation(db):
    block_registry.block(db, ALICE, BOB)
    block_registry.block(db, BOB, ALICE)
    block_registry.unblock(db, ALICE, BOB)
    assert block_registry.is_blocked_either_direction(db, ALICE, BOB)


def test_self_block(db):
    with pytest.raises(ValidationError):
        block_registry.block(db, ALICE, ALICE)


def test_unblock(db):
    block_registry.block(db, ALICE, BOB)
    block_registry.unblock(db, ALICE, BOB)
    assert not block_registry.is_blocked_either_direction(db, ALICE, BOB)
    with pytest.raises(NotBlocked):
        block_registry.unblock(db, ALICE, BOB)


def test_list_blocked(db):
    block_registry.block(db, ALICE, BOB, "spam")
    block_registry.block(db, ALICE, CAROL)
    blocked = block_registry.list_blocked(db, ALICE)
    assert {b.blocked_user for b in blocked} == {BOB, CAROL}
    reasons = {b.blocked_user: b.reason for b in blocked}
    assert reasons == {BOB: "spam", CAROL: "User blocked"}
    assert block_registry.list_blocked(db, BOB) == []

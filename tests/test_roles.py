from __future__ import annotations

import itertools

import pytest

from rollcall.core.auth.roles import (
    Capability,
    Role,
    at_least,
    auth_context,
    can,
    capabilities_for,
    is_visitor,
)
from rollcall.core.auth.user_manager import Identity


def _identity(role):
    return Identity(id=1, first_name="Ada", surname="Lovelace", username="ada", role=role)


def test_role_order_matches_declaration():
    declared = list(Role)
    assert declared == [Role.PARTICIPANT, Role.PREFECT, Role.ADMIN, Role.DEV]
    for a, b in itertools.product(declared, repeat=2):
        assert (a >= b) == (declared.index(a) >= declared.index(b))


def test_role_round_trips_through_storage_name():
    for role in Role:
        assert Role.from_string(role.db_name) is role
    with pytest.raises(KeyError):
        Role.from_string("superuser")


def test_visitor_fails_every_threshold():
    for role in Role:
        assert at_least(None, role) is False
    assert is_visitor(None) is True
    assert is_visitor(_identity(Role.PARTICIPANT)) is False


def test_at_least_compares_rank():
    prefect = _identity(Role.PREFECT)
    assert at_least(prefect, Role.PARTICIPANT)
    assert at_least(prefect, Role.PREFECT)
    assert not at_least(prefect, Role.ADMIN)


def test_capabilities_keep_distinct_members():
    assert len({c.value for c in Capability}) == len(list(Capability))
    assert Capability.EDIT_PEOPLE.threshold is Role.ADMIN
    assert Capability.SEE_PEOPLE.threshold is Role.PREFECT


def test_capability_checks():
    admin = _identity(Role.ADMIN)
    assert can(admin, Capability.EDIT_PEOPLE)
    assert not can(admin, Capability.DEV_ACCESS)
    assert can(_identity(Role.DEV), Capability.DEV_ACCESS)
    assert not can(None, Capability.ADD_RM_SELF_TO_EVENT)


def test_capabilities_grow_with_rank():
    previous = frozenset()
    for role in Role:
        current = capabilities_for(role)
        assert previous <= current
        previous = current
    assert capabilities_for(Role.DEV) == frozenset(Capability)


def test_auth_context_for_visitor_and_person():
    anonymous = auth_context(None)
    assert anonymous["is_logged_in"] is False
    assert not any(anonymous["permissions"].values())

    context = auth_context(_identity(Role.PREFECT))
    assert context["is_logged_in"] is True
    assert context["permissions"]["edit_events"] is True
    assert context["permissions"]["edit_people"] is False
    assert context["user"]["username"] == "ada"
    assert "password_hash" not in context["user"]

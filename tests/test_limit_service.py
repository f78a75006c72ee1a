"""
tests/test_limit_service.py — Quota Service Tests
==================================================
"""

from __future__ import annotations

import pytest
from sqlalchemy.orm import Session

from troupesync.constants import GLOBAL_LIMITS, INVITED_TROUPE_LIMITS, UNINVITED_TROUPE_LIMITS
from troupesync.database.models import GlobalLimit, Troupe, TroupeLimit
from troupesync.errors import DataIntegrityError, QuotaExceeded, TroupeNotFound
from troupesync.services.limit_service import (
    GLOBAL_LIMIT_ID,
    increment_global_limits,
    increment_troupe_limits,
    init_global_limits,
    limit_scope,
    quota_guard,
    refresh_global_limits,
    refresh_troupe_limits,
    require_within_limits,
    within_global_limits,
    within_troupe_limits,
)
from troupesync.services.troupe_service import create_troupe


def limits_of(engine, troupe_id: str) -> TroupeLimit:
    with Session(engine) as session:
        return session.get(TroupeLimit, troupe_id)


class TestTroupeLimits:
    def test_new_troupe_gets_invited_preset(self, db_engine, troupe_id):
        limits = limits_of(db_engine, troupe_id)
        assert limits.has_invite_code
        assert limits.events_left == INVITED_TROUPE_LIMITS["events_left"]

    def test_within_limits(self, db_engine, troupe_id):
        with Session(db_engine) as session:
            assert within_troupe_limits(session, troupe_id, {"manual_syncs_left": -5})
            assert not within_troupe_limits(session, troupe_id, {"manual_syncs_left": -6})
            assert within_troupe_limits(session, troupe_id, {"events_left": +3})

    def test_unknown_troupe(self, db_engine):
        with Session(db_engine) as session:
            with pytest.raises(TroupeNotFound):
                within_troupe_limits(session, "nope", {"events_left": -1})

    def test_unknown_counter_rejected(self, db_engine, troupe_id):
        with Session(db_engine) as session:
            with pytest.raises(ValueError):
                within_troupe_limits(session, troupe_id, {"troupe_id": -1})

    def test_increment_applies_all_deltas(self, db_engine, troupe_id):
        with Session(db_engine) as session:
            increment_troupe_limits(
                session, troupe_id, {"events_left": -2, "members_left": -3, "modify_operations_left": 0}
            )
            session.commit()
        limits = limits_of(db_engine, troupe_id)
        assert limits.events_left == INVITED_TROUPE_LIMITS["events_left"] - 2
        assert limits.members_left == INVITED_TROUPE_LIMITS["members_left"] - 3

    def test_increment_below_zero_is_integrity_error(self, db_engine, troupe_id):
        with Session(db_engine) as session:
            with pytest.raises(DataIntegrityError):
                increment_troupe_limits(session, troupe_id, {"manual_syncs_left": -6})
            session.rollback()
        assert limits_of(db_engine, troupe_id).manual_syncs_left == 5

    def test_require_raises_quota_exceeded(self, db_engine, troupe_id):
        with Session(db_engine) as session:
            with pytest.raises(QuotaExceeded):
                require_within_limits(session, troupe_id, {"manual_syncs_left": -99})


class TestQuotaGuard:
    def test_mutation_and_accounting_commit_together(self, db_engine, troupe_id):
        with quota_guard(db_engine, troupe_id, {"modify_operations_left": -1}) as session:
            session.get(Troupe, troupe_id).name = "Renamed"
        with Session(db_engine) as session:
            assert session.get(Troupe, troupe_id).name == "Renamed"
        assert limits_of(db_engine, troupe_id).modify_operations_left == 29

    def test_failed_mutation_leaves_counters(self, db_engine, troupe_id):
        with pytest.raises(RuntimeError):
            with quota_guard(db_engine, troupe_id, {"modify_operations_left": -1}) as session:
                session.get(Troupe, troupe_id).name = "Renamed"
                raise RuntimeError("mutation failed")
        with Session(db_engine) as session:
            assert session.get(Troupe, troupe_id).name == "Strings"
        assert limits_of(db_engine, troupe_id).modify_operations_left == 30

    def test_precheck_blocks_mutation(self, db_engine, troupe_id):
        ran = []
        with pytest.raises(QuotaExceeded):
            with quota_guard(db_engine, troupe_id, {"manual_syncs_left": -6}):
                ran.append(True)
        assert ran == []


class TestLimitScope:
    def test_increments_applied_once_on_exit(self, db_engine, troupe_id):
        with Session(db_engine) as session:
            with limit_scope(session, troupe_id) as scope:
                for _ in range(3):
                    assert within_troupe_limits(session, troupe_id, {"events_left": -1}, scope)
                    increment_troupe_limits(session, troupe_id, {"events_left": -1}, scope)
                assert limits_of(db_engine, troupe_id).events_left == 100
                assert scope.pending["events_left"] == -3
            session.commit()
        assert limits_of(db_engine, troupe_id).events_left == 97

    def test_scope_for_other_troupe_not_used(self, db_engine, troupe_id):
        other = create_troupe(db_engine, "Other", has_invite_code=True)["id"]
        with Session(db_engine) as session:
            with limit_scope(session, troupe_id) as scope:
                increment_troupe_limits(session, other, {"events_left": -1}, scope)
            session.commit()
        assert limits_of(db_engine, other).events_left == 99
        assert limits_of(db_engine, troupe_id).events_left == 100


class TestRefresh:
    def test_resets_periodic_counters_only(self, db_engine, troupe_id):
        init_global_limits(db_engine)
        uninvited = create_troupe(db_engine, "Walk-ins")["id"]
        with Session(db_engine) as session:
            for tid in (troupe_id, uninvited):
                increment_troupe_limits(
                    session, tid, {"manual_syncs_left": -1, "events_left": -1, "get_operations_left": -4}
                )
            session.commit()

        assert refresh_troupe_limits(db_engine) == {"invited": 1, "uninvited": 1}

        invited_limits = limits_of(db_engine, troupe_id)
        assert invited_limits.manual_syncs_left == INVITED_TROUPE_LIMITS["manual_syncs_left"]
        assert invited_limits.get_operations_left == INVITED_TROUPE_LIMITS["get_operations_left"]
        assert invited_limits.events_left == INVITED_TROUPE_LIMITS["events_left"] - 1
        walk_in = limits_of(db_engine, uninvited)
        assert walk_in.manual_syncs_left == UNINVITED_TROUPE_LIMITS["manual_syncs_left"]
        assert walk_in.events_left == UNINVITED_TROUPE_LIMITS["events_left"] - 1


class TestGlobalLimits:
    def test_init_is_idempotent(self, db_engine):
        init_global_limits(db_engine)
        init_global_limits(db_engine)
        with Session(db_engine) as session:
            row = session.get(GlobalLimit, GLOBAL_LIMIT_ID)
            assert row.uninvited_users_left == GLOBAL_LIMITS["uninvited_users_left"]

    def test_missing_row_means_no_capacity(self, db_engine):
        with Session(db_engine) as session:
            assert not within_global_limits(session, {"uninvited_users_left": -1})

    def test_uninvited_troupes_consume_global_counter(self, db_engine):
        init_global_limits(db_engine)
        for n in range(GLOBAL_LIMITS["uninvited_users_left"]):
            create_troupe(db_engine, f"Walk-in {n}")
        with pytest.raises(QuotaExceeded):
            create_troupe(db_engine, "One too many")
        create_troupe(db_engine, "Invited", has_invite_code=True)

    def test_increment_floor(self, db_engine):
        init_global_limits(db_engine)
        with Session(db_engine) as session:
            with pytest.raises(DataIntegrityError):
                increment_global_limits(session, {"uninvited_users_left": -99})

    def test_refresh_restores_preset(self, db_engine):
        init_global_limits(db_engine)
        create_troupe(db_engine, "Walk-in")
        refresh_global_limits(db_engine)
        with Session(db_engine) as session:
            row = session.get(GlobalLimit, GLOBAL_LIMIT_ID)
            assert row.uninvited_users_left == GLOBAL_LIMITS["uninvited_users_left"]

    def test_refresh_creates_missing_row(self, db_engine):
        refresh_global_limits(db_engine)
        with Session(db_engine) as session:
            assert session.get(GlobalLimit, GLOBAL_LIMIT_ID) is not None

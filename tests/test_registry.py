from datetime import timedelta

import pytest

from devdash.app import build_registry
from devdash.core.errors import RegistrationError
from devdash.core.models import UserPref
from devdash.core.registry import DEFAULT_RETRY, Registry, RetryOptions


def _noop(ctx):
    pass


def _two(ctx, a, b):
    pass


def _many(ctx, *args):
    pass


def test_backoff_doubles_and_caps():
    opts = RetryOptions(limit=5, min_backoff=timedelta(seconds=1), max_backoff=timedelta(seconds=5))
    assert [opts.backoff(n).total_seconds() for n in range(1, 6)] == [1, 2, 4, 5, 5]
    assert DEFAULT_RETRY.backoff(20) == timedelta(hours=1)


def test_duplicate_names_rejected():
    reg = Registry()
    reg.add_task("t", _noop)
    with pytest.raises(RegistrationError):
        reg.add_task("t", _noop)
    reg.add_cron("c", timedelta(minutes=1), _noop)
    with pytest.raises(RegistrationError):
        reg.add_cron("c", timedelta(minutes=5), _noop)
    reg.add_kind("K", UserPref)
    with pytest.raises(RegistrationError):
        reg.add_kind("K", UserPref)


def test_frozen_registry_rejects_additions():
    reg = Registry().freeze()
    assert reg.frozen
    with pytest.raises(RegistrationError):
        reg.add_task("late", _noop)
    with pytest.raises(RegistrationError):
        reg.add_status("late", lambda ctx: "")


def test_kind_validation():
    reg = Registry()
    with pytest.raises(RegistrationError):
        reg.add_kind("Bad", UserPref, version=0)
    with pytest.raises(RegistrationError):
        reg.add_kind("Future", UserPref, version=2, migrations={3: lambda r: r})
    with pytest.raises(RegistrationError):
        reg.kind("Missing")
    with pytest.raises(RegistrationError):
        reg.add_cron("never", timedelta(0), _noop)


def test_task_arity_recorded():
    reg = Registry()
    assert reg.add_task("none", _noop).nargs == 0
    assert reg.add_task("two", _two).nargs == 2
    assert reg.add_task("many", _many).nargs == -1


def test_pending_migrations_in_order():
    reg = Registry()
    kind = reg.add_kind("K", UserPref, version=3, migrations={3: _noop, 2: _two})
    assert [v for v, _ in kind.pending(1)] == [2, 3]
    assert [v for v, _ in kind.pending(2)] == [3]
    assert kind.pending(3) == []


def test_build_registry_collects_every_module():
    reg = build_registry()
    assert reg.frozen
    assert {"Issue", "CL", "Patch", "ReviewTodo", "UserPref"} <= set(reg.kinds)
    assert {"issue.load", "codereview.load", "app.update"} <= set(reg.cron)
    assert "app.scan.codereview.loadmsg" in reg.cron
    assert {"codereview.loadmsg", "codereview.loadpatch", "codereview.mail"} == set(reg.scans)
    assert {"app.cron", "app.scandata", "app.update.kind"} <= set(reg.tasks)
    assert reg.kinds["CL"].version == 2

from datetime import UTC, datetime, timedelta

import pytest

from devdash.core.models import CL, Issue, Message
from devdash.dash.assemble import (
    Item,
    build_dashboard,
    cl_bugs,
    dashboard_frame,
    dir_key,
    item_dir,
    set_muted,
)

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


def active_cl(number, desc, files, reviewer="gri", owner="gopher@example.com", repo="go"):
    hello = (
        f"Hello {reviewer}@golang.org,\n\nI'd like you to review this change to\nhttps://code.google.com/p/{repo}"
    )
    return CL(
        cl=number,
        desc=desc,
        owner_email=owner,
        modified=T0 - timedelta(hours=1),
        reviewers=["golang-dev@googlegroups.com"],
        patch_sets=["1"],
        messages=[Message(sender=owner, text=hello, time=T0 - timedelta(hours=2))],
        messages_loaded=True,
        patch_sets_loaded=True,
        files=files,
    )


@pytest.fixture
def populated(ctx):
    put = ctx.store.put
    put("Issue", "GO-77", Issue(key="GO-77", title="net/http: client leaks connections", labels=["Release-Go1.3"], modified=T0))
    put("Issue", "GO-80", Issue(key="GO-80", title="cmd/go: build cache misses", labels=["Release-Go1.3"], modified=T0))
    put("Issue", "GO-81", Issue(key="GO-81", title="unlabelled: not on dashboard", modified=T0))
    put("Issue", "GO-82", Issue(key="GO-82", title="os: closed", labels=["Release-Go1.3"], state="closed", modified=T0))
    put("CL", "100", active_cl("100", "net/http: close idle conns\n\nFixes issue 77.", ["src/pkg/net/http/transport.go"]))
    put("CL", "200", active_cl("200", "strings: add Cut", ["src/pkg/strings/strings.go"], reviewer="rsc"))
    put("CL", "300", active_cl("300", "go.tools/cmd/vet: check printf", ["cmd/vet/print.go"], reviewer="rsc", owner="gri@golang.org", repo="go.tools"))
    put("CL", "400", CL(cl="400", desc="os: not mailed", files=["src/pkg/os/file.go"]))
    return ctx


def _dirs(dash):
    return [g.dir for g in dash.groups]


def test_dashboard_groups_by_directory(populated):
    dash = build_dashboard(populated)
    assert _dirs(dash) == ["cmd/go", "net/http", "strings", "go.tools/cmd/vet"]
    net = dash.groups[1]
    assert len(net.items) == 1
    assert net.items[0].bug.key == "GO-77"
    assert [cl.cl for cl in net.items[0].cls] == ["100"]
    assert dash.user == ""


def test_dashboard_todo_for_viewer(populated):
    dash = build_dashboard(populated, "gri@google.com")
    assert dash.user == "gri@golang.org"
    # gri reviews 100 and owns 300, which waits on rsc
    assert dash.todo_cls == {"100"}
    todo = {g.dir: g.todo for g in dash.groups}
    assert todo == {"cmd/go": False, "net/http": True, "strings": False, "go.tools/cmd/vet": False}


def test_dashboard_hides_muted_directories(populated):
    pref = set_muted(populated, "gri@golang.org", "strings", True)
    assert pref.muted == ["strings"]
    dash = build_dashboard(populated, "gri@golang.org")
    assert [g.dir for g in dash.groups if g.muted] == ["strings"]
    pref = set_muted(populated, "gri@golang.org", "strings", False)
    assert pref.muted == []


def test_set_muted_requires_user_and_dir(ctx):
    with pytest.raises(ValueError):
        set_muted(ctx, "", "strings", True)
    with pytest.raises(ValueError):
        set_muted(ctx, "gri@golang.org", "", True)


def test_dashboard_frame_rows(populated):
    df = dashboard_frame(build_dashboard(populated, "gri@golang.org"), "America/Los_Angeles")
    assert list(df["id"]) == ["GO-80", "GO-77", "100", "200", "300"]
    assert list(df["kind"]) == ["issue", "issue", "cl", "cl", "cl"]
    row = df[df["id"] == "100"].iloc[0]
    assert row["reviewer"] == "gri"
    assert row["owner"] == "gopher"
    assert bool(row["todo"]) is True
    assert str(row["modified"].tzinfo) == "America/Los_Angeles"


def test_item_dir_rules():
    global_cl = CL(summary="all: fix vet warnings", dirs=["net", "os"])
    assert item_dir(Item(cls=[global_cl])) == "all"
    named = CL(summary="net: tweak", dirs=["os", "net"])
    assert item_dir(Item(cls=[named])) == "net"
    unnamed = CL(summary="misc cleanup", dirs=["os"])
    assert item_dir(Item(cls=[unnamed])) == "os"
    assert item_dir(Item(bug=Issue(summary="no directory"))) == "?"
    assert item_dir(Item()) == "?"


def test_dir_key_puts_subrepos_last():
    assert sorted(["net", "go.tools/cmd/vet", "cmd/go"], key=dir_key) == ["cmd/go", "net", "go.tools/cmd/vet"]


def test_cl_bugs_ignores_zero():
    cl = CL(desc="Fixes issue 12.\nFixes issue 0.")
    assert cl_bugs(cl, "GO") == ["GO-12"]

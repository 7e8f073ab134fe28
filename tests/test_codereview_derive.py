from dataclasses import asdict
from datetime import UTC, datetime, timedelta

from devdash.codereview.derive import derive_cl, dirs, migrate_v2, normalize_repo, roster_for
from devdash.core.models import CL, Message
from devdash.core.text import short_email

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)

HELLO = "Hello {who}@golang.org (cc: golang-dev@googlegroups.com),\n\nI'd like you to review this change to\nhttps://code.google.com/p/go"


def msg(sender, text, minutes=0):
    return Message(sender=sender, text=text, time=T0 - timedelta(hours=1) + timedelta(minutes=minutes))


def make_cl(messages, **kw):
    base = dict(
        cl="1234",
        desc="net/http: fix leak\n\nFixes issue 77.",
        owner_email="gopher@example.com",
        modified=T0 - timedelta(hours=1),
        reviewers=["golang-dev@googlegroups.com"],
        patch_sets=["1"],
        messages=messages,
        messages_loaded=True,
        patch_sets_loaded=True,
        files=["src/pkg/net/http/client.go"],
    )
    base.update(kw)
    return CL(**base)


def test_explicit_reviewer_with_lgtm(settings):
    cl = make_cl([msg("gopher@example.com", "R=alice"), msg("alice@golang.org", "LGTM", 5)])
    derive_cl(cl, T0, settings)
    assert short_email(cl.primary_reviewer) == "alice"
    assert cl.lgtm == ["alice@golang.org"]
    assert cl.not_lgtm == []
    assert cl.needs_review is False


def test_review_request_makes_cl_active(settings):
    cl = make_cl([msg("gopher@example.com", HELLO.format(who="gri"))])
    derive_cl(cl, T0, settings)
    assert cl.mailed
    assert cl.primary_reviewer == "gri@golang.org"
    assert cl.needs_review
    assert cl.repo == "go"
    assert cl.dirs == ["net/http"]
    assert cl.active
    assert cl.desc_issue == ["GO-77"]
    assert cl.need_mail_issue == ["GO-77"]
    assert cl.summary == "net/http: fix leak"


def test_reviewer_reply_clears_needs_review(settings):
    cl = make_cl([msg("gopher@example.com", HELLO.format(who="gri")), msg("gri@golang.org", "a few comments", 5)])
    derive_cl(cl, T0, settings)
    assert cl.needs_review is False
    cl.messages.append(msg("gopher@example.com", "PTAL", 10))
    derive_cl(cl, T0, settings)
    assert cl.needs_review is True


def test_submitted_cl_takes_first_lgtm(settings):
    cl = make_cl(
        [
            msg("gopher@example.com", "R=gri"),
            msg("rsc@golang.org", "LGTM", 1),
            msg("bob@golang.org", "LGTM\nnice", 2),
            msg("gopher@example.com", "*** Submitted as abc123 ***", 3),
        ]
    )
    derive_cl(cl, T0, settings)
    assert cl.submitted
    assert cl.lgtm == ["bob@golang.org", "rsc@golang.org"]
    assert cl.primary_reviewer == "bob@golang.org"
    assert cl.needs_review is False
    assert cl.active is False
    assert cl.need_mail_issue == []


def test_not_lgtm_replaces_lgtm_and_outsiders_do_not_count(settings):
    cl = make_cl(
        [
            msg("rsc@golang.org", "LGTM", 1),
            msg("stranger@example.com", "LGTM", 2),
            msg("rsc@golang.org", "NOT LGTM\nwait", 3),
        ]
    )
    derive_cl(cl, T0, settings)
    assert cl.lgtm == []
    assert cl.not_lgtm == ["rsc@golang.org"]


def test_alternate_domain_counts_as_reviewer(settings):
    cl = make_cl([msg("rsc@google.com", "LGTM")])
    derive_cl(cl, T0, settings)
    assert cl.lgtm == ["rsc@google.com"]
    assert cl.primary_reviewer == "rsc@golang.org"


def test_group_and_close_reviewers(settings):
    cl = make_cl([msg("gopher@example.com", HELLO.format(who="gri")), msg("gopher@example.com", "R=golang-dev", 1)])
    derive_cl(cl, T0, settings)
    assert cl.primary_reviewer == ""

    cl.messages.append(msg("gopher@example.com", "R=close", 2))
    derive_cl(cl, T0, settings)
    assert cl.primary_reviewer == "close"
    assert cl.active is False


def test_active_needs_loaded_recent_open_cl(settings):
    hello = [msg("gopher@example.com", HELLO.format(who="gri"))]
    for kw in (
        {"patch_sets_loaded": False},
        {"messages_loaded": False},
        {"closed": True},
        {"reviewers": []},
        {"modified": T0 - timedelta(days=366)},
    ):
        cl = make_cl(list(hello), **kw)
        derive_cl(cl, T0, settings)
        assert cl.active is False, kw


def test_dead_cl_counts_as_loaded_and_inactive(settings):
    cl = CL(cl="99", dead=True)
    derive_cl(cl, T0, settings)
    assert cl.messages_loaded and cl.patch_sets_loaded
    assert cl.active is False


def test_already_mailed_issues_are_not_mailed_again(settings):
    cl = make_cl([msg("gopher@example.com", HELLO.format(who="gri"))], desc="fix issue 5 and GO-6", mailed_issue=["GO-5", "GO-5"])
    derive_cl(cl, T0, settings)
    assert cl.desc_issue == ["GO-5", "GO-6"]
    assert cl.mailed_issue == ["GO-5"]
    assert cl.need_mail_issue == ["GO-6"]


def test_dirs_prefers_most_files_then_name():
    files = ["pkg/net/http/client.go", "pkg/net/url.go", "test/run.go"]
    assert dirs(files, "")[0] == "pkg/net"
    assert dirs(files, "")[-1] == "test"
    assert dirs(["src/pkg/net/http/a.go", "src/pkg/net/http/b.go", "src/cmd/go/c.go"], "go") == ["net/http", "cmd/go"]
    assert dirs(["README", "src/make.bash"], "go") == ["build"]
    assert dirs(["cmd/vet/main.go"], "go.tools") == ["go.tools/cmd/vet"]


def test_repo_normalisation_and_migration():
    assert normalize_repo("code.google.com/p/go") == "go"
    assert normalize_repo("code.google.com/p/go.tools") == "go.tools"
    assert normalize_repo("code.google.com/p/goauth2") == "code.google.com/p/goauth2"
    cl = migrate_v2(CL(patch_repo="code.google.com/p/go.net"))
    assert cl.patch_repo == "go.net"


def test_roster_lookup(settings):
    roster = roster_for(settings)
    assert roster.expand("gri") == "gri@golang.org"
    assert roster.expand("nobody") == ""
    assert roster.is_reviewer("bob@google.com") == "bob@golang.org"
    assert roster.is_group("golang-dev")


def test_derived_fields_ignore_previous_derived_values(settings):
    thread = [msg("gopher@example.com", HELLO.format(who="gri")), msg("gri@golang.org", "PTAL", 3)]
    clean = make_cl(list(thread))
    seeded = make_cl(
        list(thread),
        active=False,
        primary_reviewer="x",
        dirs=["junk"],
        lgtm=["nobody@example.com"],
        not_lgtm=["gri@golang.org"],
        submitted=True,
        needs_review=True,
        repo="junk",
        summary="junk",
        desc_issue=["GO-1"],
        need_mail_issue=["GO-2"],
    )
    derive_cl(clean, T0, settings)
    derive_cl(seeded, T0, settings)
    assert asdict(seeded) == asdict(clean)
    assert clean.primary_reviewer == "gri@golang.org"
    assert clean.dirs == ["net/http"]

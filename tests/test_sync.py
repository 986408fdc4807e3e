import io
import json
import sys
import unittest
from pathlib import Path
from unittest.mock import Mock

HERE = Path(__file__).resolve().parent
ROOT = HERE.parent
for path in (str(ROOT), str(HERE)):
    if path not in sys.path:
        sys.path.insert(0, path)

from fakes import CancellingClient, FakeClient, repo, team, user
from orgsync.cancellation import CancelToken
from orgsync.db import Database
from orgsync.errors import PullCancelled, RemoteAPIError, StorageError
from orgsync.github_client import GitHubAPIError
from orgsync.resume import PullOptions, ResumeState
from orgsync.sync import OrgSync
from orgsync.targets import SyncTarget

FAST = PullOptions(interval=0)


class SyncTestCase(unittest.TestCase):
    def setUp(self):
        self.db = Database(":memory:")
        self.out = io.StringIO()

    def tearDown(self):
        self.db.close()

    def syncer(self, client):
        return OrgSync(client, self.db, "acme", out=self.out)

    def rows(self, sql, params=()):
        with self.db.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchall()

    def seed_repos(self, *names):
        client = FakeClient(pages={"repos": [[repo(i + 1, n) for i, n in enumerate(names)]]})
        self.syncer(client).pull(SyncTarget("repos"), FAST)

    def seed_teams(self, *slugs):
        client = FakeClient(pages={"teams": [[team(10 + i, s) for i, s in enumerate(slugs)]]})
        self.syncer(client).pull(SyncTarget("teams"), FAST)

    def seed_repo_users(self, repo_name, *logins):
        columns = ["repo_name", "user_id", "user_login", "permission"]
        with self.db.transaction() as cur:
            self.db.insert_or_replace_batch(
                cur, "repo_users", columns, [(repo_name, None, login, "pull") for login in logins]
            )

    def repo_user_logins(self, repo_name):
        return sorted(r[0] for r in self.rows("SELECT user_login FROM repo_users WHERE repo_name = ?", (repo_name,)))


class FullReplaceTests(SyncTestCase):
    def test_full_replace_drops_stale_rows(self):
        first = FakeClient(pages={"members": [[user(1, "a"), user(2, "b")], [user(3, "c")]]})
        items = self.syncer(first).pull(SyncTarget("users"), FAST)
        self.assertEqual(len(items), 3)
        self.assertEqual(self.db.count_rows("users"), 3)

        second = FakeClient(pages={"members": [[user(1, "a")]]})
        self.syncer(second).pull(SyncTarget("users"), FAST)
        self.assertEqual(self.rows("SELECT login FROM users"), [("a",)])

    def test_buffered_restart_reports_page_zero(self):
        client = FakeClient(pages={"members": [[user(1, "a")], [user(2, "b")]]})
        progress = Mock()
        opts = PullOptions(interval=0, resume=ResumeState("users", None, last_page=1, count=1), progress=progress)

        self.syncer(client).pull(SyncTarget("users"), opts)

        progress.start.assert_called_once_with("users", None, 0, 0)
        self.assertEqual(client.calls, [("members", 1), ("members", 2)])

    def test_repeated_sync_is_idempotent(self):
        client = FakeClient(pages={"repos": [[repo(1, "alpha"), repo(2, "beta")]]})
        for _ in range(2):
            self.syncer(client).pull(SyncTarget("repos"), FAST)
        self.assertEqual(self.db.count_rows("repositories"), 2)

    def test_failed_insert_keeps_previous_generation(self):
        good = FakeClient(pages={"members": [[user(1, "a"), user(2, "b"), user(3, "c")]]})
        self.syncer(good).pull(SyncTarget("users"), FAST)

        bad = FakeClient(pages={"members": [[user(4, "d"), user(5, None)]]})
        with self.assertRaises(StorageError):
            self.syncer(bad).pull(SyncTarget("users"), FAST)

        self.assertEqual(sorted(r[0] for r in self.rows("SELECT login FROM users")), ["a", "b", "c"])

    def test_remote_failure_leaves_table_untouched(self):
        self.seed_teams("core")
        client = FakeClient(errors={"teams": GitHubAPIError(502, "Bad Gateway", "https://x")})
        with self.assertRaises(RemoteAPIError):
            self.syncer(client).pull(SyncTarget("teams"), FAST)
        self.assertEqual(self.db.count_rows("teams"), 1)

    def test_outside_users(self):
        client = FakeClient(pages={"outside": [[user(7, "vendor")]]})
        self.syncer(client).pull(SyncTarget("outside-users"), FAST)
        self.assertEqual(self.rows("SELECT login FROM outside_users"), [("vendor",)])

    def test_detail_users_falls_back_to_list_entry(self):
        client = FakeClient(
            pages={"members": [[user(1, "a"), user(2, "b")]]},
            users={"a": user(1, "a", name="Alice", company="Acme")},
        )
        items = self.syncer(client).pull(SyncTarget("detail-users"), FAST)

        self.assertEqual(len(items), 2)
        self.assertEqual(
            self.rows("SELECT login, name, company FROM users ORDER BY login"),
            [("a", "Alice", "Acme"), ("b", None, None)],
        )

    def test_token_permission_keeps_single_row(self):
        client = FakeClient(headers={
            "X-OAuth-Scopes": "repo, read:org",
            "X-Accepted-OAuth-Scopes": "",
            "X-GitHub-Media-Type": "github.v3",
            "X-RateLimit-Limit": "5000",
            "X-RateLimit-Remaining": "4999",
            "X-RateLimit-Reset": "1700000000",
        })
        for _ in range(2):
            self.syncer(client).pull(SyncTarget("token-permission"), FAST)

        self.assertEqual(
            self.rows("SELECT scopes, x_github_media_type, x_ratelimit_limit, x_ratelimit_remaining FROM token_permissions"),
            [("repo, read:org", "github.v3", 5000, 4999)],
        )

    def test_no_store_writes_nothing_and_prints(self):
        client = FakeClient(pages={"members": [[user(1, "a")]]})
        self.syncer(client).pull(SyncTarget("users"), PullOptions(interval=0, store=False, stdout=True))

        self.assertEqual(self.db.count_rows("users"), 0)
        self.assertEqual(json.loads(self.out.getvalue()), [{"id": 1, "login": "a"}])


class ScopedReplaceTests(SyncTestCase):
    def test_other_scopes_are_untouched(self):
        client = FakeClient(pages={
            ("collaborators", "alpha"): [[user(1, "a", permissions={"admin": True, "pull": True})]],
            ("collaborators", "beta"): [[user(2, "b", permissions={"pull": True})]],
        })
        self.syncer(client).pull(SyncTarget("repos-users", repo_name="alpha"), FAST)
        self.syncer(client).pull(SyncTarget("repos-users", repo_name="beta"), FAST)

        client.pages[("collaborators", "alpha")] = [[user(3, "c", permissions={"push": True})]]
        self.syncer(client).pull(SyncTarget("repos-users", repo_name="alpha"), FAST)

        self.assertEqual(self.rows("SELECT user_login, permission FROM repo_users WHERE repo_name='alpha'"), [("c", "push")])
        self.assertEqual(self.rows("SELECT user_login, permission FROM repo_users WHERE repo_name='beta'"), [("b", "pull")])

    def test_repo_teams_permission(self):
        client = FakeClient(pages={("repo_teams", "alpha"): [[
            dict(team(10, "core"), permission="push"),
            dict(team(11, "ops"), permissions={"maintain": True, "pull": True}),
        ]]})
        self.syncer(client).pull(SyncTarget("repos-teams", repo_name="alpha"), FAST)

        self.assertEqual(
            self.rows("SELECT team_slug, permission FROM repo_teams ORDER BY team_slug"),
            [("core", "push"), ("ops", "maintain")],
        )

    def test_team_users_link_team_id(self):
        self.seed_teams("core")
        client = FakeClient(pages={("team_members", "core"): [[user(1, "a")]]})
        self.syncer(client).pull(SyncTarget("team-user", team_slug="core"), PullOptions(interval=0, stdout=True))

        self.assertEqual(self.rows("SELECT team_id, team_slug, user_login FROM team_users"), [(10, "core", "a")])
        self.assertEqual(json.loads(self.out.getvalue())["team"], "core")

    def test_missing_or_invalid_scope(self):
        syncer = self.syncer(FakeClient())
        with self.assertRaises(ValueError):
            syncer.pull(SyncTarget("repos-users"), FAST)
        with self.assertRaises(ValueError):
            syncer.pull(SyncTarget("team-user", team_slug="Not A Slug"), FAST)
        with self.assertRaises(ValueError):
            syncer.pull(SyncTarget("everything"), FAST)


class EveryScopeTests(SyncTestCase):
    def setUp(self):
        super().setUp()
        self.seed_repos("alpha", "beta", "gamma")

    def collaborators(self):
        return FakeClient(pages={
            ("collaborators", "alpha"): [[user(1, "a")]],
            ("collaborators", "beta"): [[user(1, "a")], [user(2, "b")]],
            ("collaborators", "gamma"): [[user(3, "c")]],
        })

    def test_all_repos_users_covers_every_repository(self):
        client = self.collaborators()
        items = self.syncer(client).pull(SyncTarget("all-repos-users"), FAST)

        self.assertEqual(len(items), 4)
        self.assertEqual(self.repo_user_logins("beta"), ["a", "b"])

    def test_resume_skips_finished_repositories(self):
        client = self.collaborators()
        resume = ResumeState("repos-users", {"repo": "beta", "repo_index": "1"}, last_page=0, count=0)
        self.syncer(client).pull(SyncTarget("all-repos-users"), PullOptions(interval=0, resume=resume))

        self.assertNotIn((("collaborators", "alpha"), 1), client.calls)
        self.assertIn((("collaborators", "gamma"), 1), client.calls)

    def test_streaming_resume_keeps_stored_pages(self):
        self.seed_repo_users("beta", "a")
        self.seed_repo_users("gamma", "stale")
        client = self.collaborators()
        progress = Mock()
        resume = ResumeState("repos-users", {"repo": "beta", "repo_index": "1"}, last_page=1, count=1, cleared=True)
        opts = PullOptions(interval=0, streaming=True, resume=resume, progress=progress)

        self.syncer(client).pull(SyncTarget("all-repos-users"), opts)

        self.assertEqual(client.calls, [(("collaborators", "beta"), 2), (("collaborators", "gamma"), 1)])
        self.assertEqual(self.repo_user_logins("beta"), ["a", "b"])
        self.assertEqual(self.repo_user_logins("gamma"), ["c"])
        progress.cleared.assert_called_once_with("repos-users", {"repo": "gamma", "repo_index": "2"})

    def test_streaming_resume_of_uncleared_scope_starts_over(self):
        self.seed_repo_users("beta", "stale")
        client = self.collaborators()
        progress = Mock()
        resume = ResumeState("repos-users", {"repo": "beta", "repo_index": "1"}, last_page=1, count=1)
        opts = PullOptions(interval=0, streaming=True, resume=resume, progress=progress)

        self.syncer(client).pull(SyncTarget("all-repos-users"), opts)

        self.assertEqual(client.calls[0], (("collaborators", "beta"), 1))
        self.assertEqual(self.repo_user_logins("beta"), ["a", "b"])
        progress.cleared.assert_any_call("repos-users", {"repo": "beta", "repo_index": "1"})

    def test_cancel_keeps_items_from_finished_scopes(self):
        token = CancelToken()
        client = CancellingClient(token, (("collaborators", "beta"), 1), pages={
            ("collaborators", "alpha"): [[user(1, "a"), user(2, "b")]],
            ("collaborators", "beta"): [[user(3, "c")], [user(4, "d")]],
        })

        with self.assertRaises(PullCancelled) as ctx:
            self.syncer(client).pull(SyncTarget("all-repos-users"), PullOptions(interval=0, cancel=token))

        self.assertEqual([i["login"] for i in ctx.exception.items], ["a", "b", "c"])
        self.assertEqual(self.repo_user_logins("alpha"), ["a", "b"])

    def test_buffered_resume_restarts_scope_from_first_page(self):
        client = self.collaborators()
        resume = ResumeState("repos-users", {"repo": "beta", "repo_index": "1"}, last_page=1, count=1)
        self.syncer(client).pull(SyncTarget("all-repos-users"), PullOptions(interval=0, resume=resume))

        self.assertIn((("collaborators", "beta"), 1), client.calls)
        self.assertEqual(self.repo_user_logins("beta"), ["a", "b"])

    def test_remote_failure_stops_repository_walk(self):
        client = self.collaborators()
        client.errors[("collaborators", "beta")] = GitHubAPIError(404, "Not Found", "https://x")
        with self.assertRaises(RemoteAPIError):
            self.syncer(client).pull(SyncTarget("all-repos-users"), FAST)
        self.assertNotIn((("collaborators", "gamma"), 1), client.calls)

    def test_all_repos_teams_stdout_groups_by_repository(self):
        client = FakeClient(pages={("repo_teams", "alpha"): [[team(10, "core")]]})
        opts = PullOptions(interval=0, store=False, stdout=True)
        self.syncer(client).pull(SyncTarget("all-repos-teams"), opts)

        payload = json.loads(self.out.getvalue())
        self.assertEqual([entry["repo"] for entry in payload], ["alpha", "beta", "gamma"])
        self.assertEqual(payload[0]["teams"][0]["slug"], "core")
        self.assertEqual(payload[1]["teams"], [])

    def test_all_teams_users_skips_failing_team(self):
        self.seed_teams("broken", "core")
        client = FakeClient(
            pages={("team_members", "core"): [[user(1, "a")]]},
            errors={("team_members", "broken"): GitHubAPIError(500, "boom", "https://x")},
        )
        items = self.syncer(client).pull(SyncTarget("all-teams-users"), FAST)

        self.assertEqual([i["login"] for i in items], ["a"])
        self.assertEqual(self.rows("SELECT team_slug, user_login FROM team_users"), [("core", "a")])

    def test_cancellation_propagates(self):
        self.seed_teams("core", "ops")
        token = CancelToken()
        token.cancel()
        client = FakeClient(pages={("team_members", "core"): [[user(1, "a")]]})
        with self.assertRaises(PullCancelled):
            self.syncer(client).pull(SyncTarget("all-teams-users"), PullOptions(interval=0, cancel=token))
        self.assertEqual(client.calls, [])

    def test_no_candidates(self):
        self.seed_teams()
        client = FakeClient()
        self.assertEqual(self.syncer(client).pull(SyncTarget("all-teams-users"), FAST), [])
        self.assertEqual(client.calls, [])

    def test_requires_database(self):
        with self.assertRaises(ValueError):
            OrgSync(FakeClient(), None, "acme").pull(SyncTarget("all-repos-teams"), FAST)


class TrackingTests(SyncTestCase):
    def test_success_and_failure_are_recorded(self):
        client = FakeClient(pages={"members": [[user(1, "a"), user(2, "b")]]})
        self.syncer(client).pull_with_tracking(SyncTarget("users"), FAST, session_key="users|k")

        failing = FakeClient(errors={"teams": GitHubAPIError(500, "boom", "https://x")})
        with self.assertRaises(RemoteAPIError):
            self.syncer(failing).pull_with_tracking(SyncTarget("teams"), FAST)

        runs = {r["target"]: r for r in self.db.get_recent_runs()}
        self.assertEqual((runs["users"]["status"], runs["users"]["records"]), ("SUCCESS", 2))
        self.assertEqual(runs["users"]["session_key"], "users|k")
        self.assertEqual(runs["teams"]["status"], "FAILED")
        self.assertIn("boom", runs["teams"]["error_message"])

    def test_cancelled_run_is_recorded(self):
        token = CancelToken()
        token.cancel()
        with self.assertRaises(PullCancelled):
            self.syncer(FakeClient()).pull_with_tracking(SyncTarget("users"), PullOptions(cancel=token))
        self.assertEqual(self.db.get_recent_runs()[0]["status"], "CANCELLED")


if __name__ == "__main__":
    unittest.main()

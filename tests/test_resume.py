import sys
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from orgsync.resume import PullOptions, ResumeState, prepare_resume

NAMES = ["alpha", "beta", "gamma"]


class ForEndpointTests(unittest.TestCase):
    def test_exact_match_resumes_after_last_page(self):
        state = ResumeState("repos-users", {"repo": "beta", "repo_index": "1"}, last_page=3, count=300)
        opts = PullOptions(resume=state).for_endpoint("repos-users", {"repo_index": "1", "repo": "beta"})

        self.assertEqual((opts.start_page, opts.initial_count), (4, 300))
        self.assertEqual(opts.resume, ResumeState())

    def test_mismatch_starts_fresh(self):
        state = ResumeState("repos-users", {"repo": "beta"}, last_page=3, count=300)
        cases = [
            ("repos-teams", {"repo": "beta"}),
            ("repos-users", {"repo": "gamma"}),
            ("repos-users", None),
            ("repos-users", {"repo": "beta", "repo_index": "1"}),
        ]
        for endpoint, metadata in cases:
            opts = PullOptions(resume=state).for_endpoint(endpoint, metadata)
            self.assertEqual((opts.start_page, opts.initial_count), (1, 0), (endpoint, metadata))

    def test_none_and_empty_metadata_are_equal(self):
        state = ResumeState("users", None, last_page=2, count=150)
        opts = PullOptions(resume=state).for_endpoint("users", {})
        self.assertEqual((opts.start_page, opts.initial_count), (3, 150))

    def test_zero_last_page_starts_at_first_page_with_count(self):
        state = ResumeState("users", None, last_page=0, count=0)
        opts = PullOptions(resume=state).for_endpoint("users")
        self.assertEqual(opts.start_page, 1)

    def test_other_options_carry_over(self):
        opts = PullOptions(store=False, stdout=True, interval=0.5, per_page=50).for_endpoint("teams")
        self.assertEqual((opts.store, opts.stdout, opts.interval, opts.per_page), (False, True, 0.5, 50))


class PrepareResumeTests(unittest.TestCase):
    def _plan(self, state):
        return prepare_resume(NAMES, state, "repos-users", "repo", "repo_index", "repository", "repository name")

    def test_stored_name_found(self):
        state = ResumeState("repos-users", {"repo": "beta", "repo_index": "1"}, 2, 20)
        plan = self._plan(state)
        self.assertEqual((plan.state, plan.index, plan.message, plan.name), (state, 1, "", "beta"))

    def test_stored_name_missing_from_list(self):
        plan = self._plan(ResumeState("repos-users", {"repo": "X", "repo_index": "1"}, 2, 20))
        self.assertEqual(plan.index, -1)
        self.assertEqual(plan.state, ResumeState())
        self.assertEqual(
            plan.message,
            "resume target repository 'X' not found in current list; restarting from first repository",
        )

    def test_index_without_name(self):
        plan = self._plan(ResumeState("repos-users", {"repo_index": "2"}, 2, 20))
        self.assertEqual(plan.index, -1)
        self.assertEqual(plan.state, ResumeState())
        self.assertEqual(
            plan.message,
            "resume metadata missing repository name; restarting from first repository (stored index=2)",
        )

    def test_endpoint_mismatch_leaves_state(self):
        state = ResumeState("users", None, 2, 20)
        plan = self._plan(state)
        self.assertEqual((plan.state, plan.index, plan.message), (state, -1, ""))

    def test_neither_key_clears_state_quietly(self):
        plan = self._plan(ResumeState("repos-users", {}, 2, 20))
        self.assertEqual((plan.state, plan.index, plan.message), (ResumeState(), -1, ""))


if __name__ == "__main__":
    unittest.main()

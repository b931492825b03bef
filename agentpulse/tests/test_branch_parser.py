import unittest

from agentpulse.branch_parser import parse_branch


class BranchParserTests(unittest.TestCase):
    def test_feature_branch_with_ticket(self) -> None:
        self.assertEqual(
            parse_branch("feature/AUTH-123-login-flow"),
            {
                "prefix": "feature",
                "ticket_id": "AUTH-123",
                "description": "Login Flow",
                "display": "AUTH-123: Login Flow",
            },
        )

    def test_prefix_without_ticket(self) -> None:
        parsed = parse_branch("fix/null-pointer_in-parser")
        self.assertEqual(parsed["prefix"], "fix")
        self.assertEqual(parsed["ticket_id"], "")
        self.assertEqual(parsed["description"], "Null Pointer In Parser")
        self.assertEqual(parsed["display"], "Fix: Null Pointer In Parser")

    def test_ticket_only(self) -> None:
        parsed = parse_branch("hotfix/OPS-7")
        self.assertEqual(parsed["ticket_id"], "OPS-7")
        self.assertEqual(parsed["description"], "")
        self.assertEqual(parsed["display"], "OPS-7")

    def test_prefix_is_case_insensitive(self) -> None:
        parsed = parse_branch("Feature/new-dashboard")
        self.assertEqual(parsed["prefix"], "feature")
        self.assertEqual(parsed["display"], "Feature: New Dashboard")

    def test_nested_path_keeps_last_segment(self) -> None:
        parsed = parse_branch("feature/team-a/AUTH-9-oauth")
        self.assertEqual(parsed["ticket_id"], "AUTH-9")
        self.assertEqual(parsed["description"], "Oauth")

    def test_unknown_prefix_passes_through(self) -> None:
        for branch in ("main", "develop", "spike/try-things", "user/someone/x"):
            with self.subTest(branch=branch):
                parsed = parse_branch(branch)
                self.assertEqual(parsed["prefix"], "")
                self.assertEqual(parsed["description"], branch)
                self.assertEqual(parsed["display"], branch)

    def test_display_non_empty_iff_branch_non_empty(self) -> None:
        for branch in ("", "   ", None, "x", "feature/", "docs/readme", "  main  "):
            with self.subTest(branch=branch):
                parsed = parse_branch(branch)
                self.assertEqual(bool(parsed["display"]), bool((branch or "").strip()))


if __name__ == "__main__":
    unittest.main()

import unittest

from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from agents.timesheet_agent.errors import RunFatalError, SlotEntryError
from agents.timesheet_agent.locator import ElementLocator, SelectorChain, resolve_selector
from agents.timesheet_agent.pages import AuthenticationPage, TimesheetPage


class _FakeHandle:
    def __init__(self, page, selector: str, count: int):
        self._page = page
        self.selector = selector
        self._count = count

    def count(self):
        if self._count < 0:
            raise ValueError(f"unsupported selector: {self.selector}")
        return self._count

    @property
    def first(self):
        return _FakeHandle(self._page, self.selector, self._count)

    def fill(self, value):
        self._page.actions.append(("fill", self.selector, value))

    def click(self, timeout=None):
        if self._page.click_error is not None:
            raise self._page.click_error
        self._page.actions.append(("click", self.selector))


class _FakePage:
    def __init__(self, counts=None, present=None):
        self.counts = dict(counts or {})
        self.present = set(present or ())
        self.actions = []
        self.click_error = None
        self.wait_error = None

    def locator(self, selector: str):
        return _FakeHandle(self, selector, self.counts.get(selector, 0))

    def click(self, selector: str, timeout=None):
        self.actions.append(("click", selector))

    def query_selector(self, selector: str):
        if selector == "broken":
            raise RuntimeError("boom")
        return object() if selector in self.present else None

    def wait_for_selector(self, selector: str, timeout=None, state=None):
        self.actions.append(("wait", selector, state))
        if self.wait_error is not None:
            raise self.wait_error


class ResolveSelectorTests(unittest.TestCase):
    CHAIN = SelectorChain("P", ("F1", "F2"), "Target")

    def test_primary_wins_when_it_matches(self) -> None:
        self.assertEqual(resolve_selector(self.CHAIN, lambda s: True), ("P", True))

    def test_first_matching_fallback_in_order(self) -> None:
        self.assertEqual(resolve_selector(self.CHAIN, lambda s: s in {"F1", "F2"}), ("F1", True))
        self.assertEqual(resolve_selector(self.CHAIN, lambda s: s == "F2"), ("F2", True))

    def test_nothing_matches_returns_primary_unresolved(self) -> None:
        self.assertEqual(resolve_selector(self.CHAIN, lambda s: False), ("P", False))

    def test_union_lists_all_candidates(self) -> None:
        self.assertEqual(self.CHAIN.union(), "P, F1, F2")


class ElementLocatorTests(unittest.TestCase):
    CHAIN = SelectorChain("P", ("F1", "F2"))

    def test_find_targets_fallback_when_primary_missing(self) -> None:
        page = _FakePage(counts={"F1": 2, "F2": 1})
        self.assertEqual(ElementLocator(page).find(self.CHAIN).selector, "F1")

    def test_find_returns_primary_when_nothing_matches(self) -> None:
        page = _FakePage()
        self.assertEqual(ElementLocator(page).find(self.CHAIN).selector, "P")

    def test_unevaluable_candidate_counts_as_no_match(self) -> None:
        page = _FakePage(counts={"P": -1, "F2": 1})
        self.assertEqual(ElementLocator(page).resolve(self.CHAIN), "F2")

    def test_resolution_does_not_touch_the_page(self) -> None:
        page = _FakePage(counts={"F1": 1})
        ElementLocator(page).resolve(self.CHAIN)
        self.assertEqual(page.actions, [])


class AuthenticationPageTests(unittest.TestCase):
    def test_password_timeout_is_run_fatal_and_names_field(self) -> None:
        page = _FakePage()
        page.wait_error = PlaywrightTimeoutError("Timeout 45000ms exceeded")
        auth = AuthenticationPage(page, timeout_ms=45_000)
        with self.assertRaises(RunFatalError) as ctx:
            auth.wait_for_password()
        self.assertIn("Password field", str(ctx.exception))
        self.assertIn("45000", str(ctx.exception))

    def test_push_verification_timeout_is_false(self) -> None:
        page = _FakePage()
        page.click_error = PlaywrightTimeoutError("Timeout 5000ms exceeded")
        self.assertFalse(AuthenticationPage(page).try_push_verification(timeout_ms=5_000))

    def test_fill_email_uses_fallback(self) -> None:
        page = _FakePage(counts={'input[type="email"]': 1})
        AuthenticationPage(page).fill_email("me@example.invalid")
        self.assertEqual(page.actions, [("fill", 'input[type="email"]', "me@example.invalid")])


class TimesheetPageTests(unittest.TestCase):
    def test_day_classification_swallows_absence_and_errors(self) -> None:
        holiday = 'li:nth-child(3) [class*="holidayIndicator"]'
        page = _FakePage(present={holiday})
        timesheet = TimesheetPage(page)
        self.assertTrue(timesheet.is_non_workable_day(3))
        self.assertFalse(timesheet.is_non_workable_day(4))
        self.assertFalse(timesheet._has_element("broken"))

    def test_add_time_entry_sequence(self) -> None:
        page = _FakePage(counts={"input.time": 1, "a.divDropdown": 1, 'input[value="OK"]': 1, '[class*="punchOut"]': 1})
        TimesheetPage(page).add_time_entry("08:00", "12:00", "Proj", "Acct")
        kinds = [(action[0], action[1]) for action in page.actions]
        self.assertEqual(
            kinds,
            [
                ("fill", "input.time"),
                ("click", "a.divDropdown"),
                ("click", 'a:has-text("Proj")'),
                ("click", 'a:has-text("Acct")'),
                ("click", 'input[value="OK"]'),
                ("wait", '[class*="contextPopup"]'),
                ("click", '[class*="punchOut"]'),
                ("fill", "input.time"),
                ("click", 'input[value="OK"]'),
                ("wait", '[class*="contextPopup"]'),
            ],
        )

    def test_add_time_entry_failure_is_slot_error(self) -> None:
        page = _FakePage()
        page.wait_error = PlaywrightTimeoutError("Timeout exceeded")
        with self.assertRaises(SlotEntryError) as ctx:
            TimesheetPage(page).add_time_entry("08:00", "12:00", "Proj", "Acct")
        self.assertIn("wait for popup", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()

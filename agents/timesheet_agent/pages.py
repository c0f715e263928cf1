import logging

from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from agents.timesheet_agent.errors import RunFatalError, SlotEntryError
from agents.timesheet_agent.locator import ElementLocator, SelectorChain


logger = logging.getLogger("agent_runner.timesheet_pages")


def _text_selector(tag: str, text: str) -> str:
    escaped = str(text).replace("\\", "\\\\").replace('"', '\\"')
    return f'{tag}:has-text("{escaped}")'


class _BasePage:
    def __init__(self, page, timeout_ms: int = 45_000) -> None:
        self.page = page
        self.timeout_ms = timeout_ms
        self.locator = ElementLocator(page)

    def _wait_required(self, chain: SelectorChain, timeout_ms: int, **kwargs) -> None:
        try:
            self.page.wait_for_selector(chain.union(), timeout=timeout_ms, **kwargs)
        except PlaywrightTimeoutError as err:
            raise RunFatalError(
                f"{chain.label()} did not appear after {timeout_ms} ms ({chain.primary})"
            ) from err


class AuthenticationPage(_BasePage):
    """Identity provider sign-in: email step, password step, optional push verification."""

    EMAIL_INPUT = SelectorChain(
        'input[name="identifier"]',
        ('input[type="email"]', 'input[autocomplete="username"]'),
        "Email field",
    )
    PASSWORD_INPUT = SelectorChain(
        'input[type="password"]',
        ('input[name="password"]', 'input[autocomplete="current-password"]'),
        "Password field",
    )
    SUBMIT_BUTTON = SelectorChain(
        'input[type="submit"]',
        ('button[type="submit"]', '[data-type="save"]'),
        "Submit button",
    )
    MFA_BUTTON = SelectorChain(
        '[data-se="okta_verify-push"]',
        (".authenticator-verify-list button", '[data-se="push"]'),
        "Push verification button",
    )
    APP_LINK = SelectorChain(
        'a[aria-label*="Replicon"]',
        ('a[href*="replicon"]', '[data-app-name*="replicon" i]'),
        "Timesheet application link",
    )

    def open(self, url: str) -> None:
        if not url:
            raise RunFatalError("Missing login URL in run configuration")
        try:
            self.page.goto(url, wait_until="domcontentloaded", timeout=max(self.timeout_ms, 60_000))
        except PlaywrightTimeoutError as err:
            raise RunFatalError(f"Login page did not load: {url}") from err

    def fill_email(self, email: str) -> None:
        self.locator.find(self.EMAIL_INPUT).fill(email)

    def fill_password(self, password: str) -> None:
        self.locator.find(self.PASSWORD_INPUT).fill(password)

    def submit(self) -> None:
        self.locator.find(self.SUBMIT_BUTTON).click()

    def wait_for_password(self, timeout_ms: int = 0) -> None:
        # The password step renders after the identifier is submitted.
        self._wait_required(self.PASSWORD_INPUT, timeout_ms or self.timeout_ms, state="visible")

    def try_push_verification(self, timeout_ms: int = 5_000) -> bool:
        """Click the push verification button if the account uses one."""
        try:
            self.locator.find(self.MFA_BUTTON).click(timeout=timeout_ms)
            return True
        except Exception:
            return False

    def wait_for_app_link(self, timeout_ms: int = 60_000) -> None:
        self._wait_required(self.APP_LINK, timeout_ms)

    def open_app(self) -> None:
        self.locator.find(self.APP_LINK).click()


class TimesheetPage(_BasePage):
    WELCOME_TEXT = SelectorChain(
        ".userWelcomeText",
        ('[class*="welcome"]', '[class*="Welcome"]'),
        "Welcome banner",
    )
    TIMESHEET_CARD = SelectorChain(
        "timesheet-card li",
        ('[class*="timesheet"] li', '[class*="timesheetCard"]'),
        "Timesheet card",
    )
    DAY_CELL = SelectorChain(
        '[class*="timeEntryCell"]',
        ('[class*="dayCell"]', '[class*="day-cell"]'),
        "Day grid",
    )
    TIME_INPUT = SelectorChain(
        "input.time",
        ('input[type="time"]', '[class*="timeInput"]'),
        "Time input",
    )
    PROJECT_DROPDOWN = SelectorChain(
        "a.divDropdown",
        ('[class*="projectSelector"]', '[class*="project-dropdown"]'),
        "Project dropdown",
    )
    OK_BUTTON = SelectorChain(
        'input[value="OK"]',
        ('button:has-text("OK")', '[class*="confirmButton"]'),
        "OK button",
    )
    CONTEXT_POPUP = SelectorChain(
        '[class*="contextPopup"]',
        ('[class*="popup"]', '[class*="modal"]:visible'),
        "Entry popup",
    )
    PUNCH_OUT = SelectorChain(
        '[class*="punchOut"]',
        ('[class*="combinedInput"] a:nth-child(2)', '[class*="punch-out"]'),
        "Punch out control",
    )

    def wait_for_welcome(self, timeout_ms: int = 30_000) -> None:
        self._wait_required(self.WELCOME_TEXT, timeout_ms)

    def open_timesheet(self) -> None:
        self.locator.find(self.TIMESHEET_CARD).click()

    def wait_for_day_cells(self, timeout_ms: int = 30_000) -> None:
        self._wait_required(self.DAY_CELL, timeout_ms)

    def select_day(self, day_number: int) -> None:
        self.page.click(
            f'li:nth-child({day_number}) a, li:nth-child({day_number}) [class*="clickable"]'
        )

    def _has_element(self, selector: str) -> bool:
        try:
            return self.page.query_selector(selector) is not None
        except Exception:
            return False

    def is_vacation_day(self, day_number: int) -> bool:
        return self._has_element(f'li:nth-child({day_number}) span:has-text("Vacations")')

    def is_holiday_day(self, day_number: int) -> bool:
        return self._has_element(f'li:nth-child({day_number}) [class*="holidayIndicator"]')

    def is_non_workable_day(self, day_number: int) -> bool:
        return self.is_vacation_day(day_number) or self.is_holiday_day(day_number)

    def fill_start_time(self, value: str) -> None:
        self.locator.find(self.TIME_INPUT).fill(value)

    def fill_end_time(self, value: str) -> None:
        self.locator.find(self.PUNCH_OUT).click()
        self.fill_start_time(value)

    def select_project(self, project_name: str) -> None:
        self.locator.find(self.PROJECT_DROPDOWN).click()
        self.page.click(_text_selector("a", project_name))

    def select_account(self, account_name: str) -> None:
        self.page.click(_text_selector("a", account_name))

    def confirm(self) -> None:
        self.locator.find(self.OK_BUTTON).click()

    def wait_for_popup_close(self, timeout_ms: int = 0) -> None:
        self.page.wait_for_selector(
            self.CONTEXT_POPUP.primary,
            state="hidden",
            timeout=timeout_ms or self.timeout_ms,
        )

    def add_time_entry(self, start_time: str, end_time: str, project_name: str, account_name: str) -> None:
        steps = (
            ("fill start time", lambda: self.fill_start_time(start_time)),
            ("select project", lambda: self.select_project(project_name)),
            ("select account", lambda: self.select_account(account_name)),
            ("confirm start", self.confirm),
            ("wait for popup", self.wait_for_popup_close),
            ("fill end time", lambda: self.fill_end_time(end_time)),
            ("confirm end", self.confirm),
            ("wait for popup", self.wait_for_popup_close),
        )
        for label, step in steps:
            try:
                step()
            except Exception as err:
                raise SlotEntryError(
                    f"Entry {start_time}-{end_time} failed at '{label}': {err}"
                ) from err
        logger.debug("Entry added %s-%s project=%s account=%s", start_time, end_time, project_name, account_name)

import logging
from dataclasses import dataclass
from typing import Callable, Tuple


logger = logging.getLogger("agent_runner.timesheet_locator")


@dataclass(frozen=True)
class SelectorChain:
    """A logical page target: one primary selector plus ordered fallbacks."""

    primary: str
    fallbacks: Tuple[str, ...] = ()
    description: str = ""

    def candidates(self) -> Tuple[str, ...]:
        return (self.primary, *self.fallbacks)

    def union(self) -> str:
        """Comma-joined selector matching any candidate, for waits."""
        return ", ".join(self.candidates())

    def label(self) -> str:
        return self.description or self.primary


def resolve_selector(chain: SelectorChain, matches: Callable[[str], bool]) -> Tuple[str, bool]:
    """Return ``(selector, resolved)`` for the first candidate that matches.

    Candidates are tried primary first, then fallbacks in listed order. When
    nothing matches the primary is returned unresolved so the caller's next
    action fails naming the primary selector.
    """
    for candidate in chain.candidates():
        if matches(candidate):
            return candidate, True
    return chain.primary, False


class ElementLocator:
    """Resolves selector chains against a live Playwright page without waiting."""

    def __init__(self, page) -> None:
        self.page = page

    def _has_match(self, selector: str) -> bool:
        try:
            return self.page.locator(selector).count() > 0
        except Exception as err:
            # Engine-specific pseudo classes can be rejected by some pages.
            logger.debug("Selector %s could not be evaluated: %s", selector, err)
            return False

    def _resolve(self, chain: SelectorChain) -> Tuple[str, bool]:
        selector, resolved = resolve_selector(chain, self._has_match)
        if not resolved:
            logger.debug("No candidate matched for %s; keeping primary %s", chain.label(), selector)
        elif selector != chain.primary:
            logger.info("Using fallback selector for %s: %s", chain.label(), selector)
        return selector, resolved

    def resolve(self, chain: SelectorChain) -> str:
        return self._resolve(chain)[0]

    def find(self, chain: SelectorChain):
        selector, resolved = self._resolve(chain)
        locator = self.page.locator(selector)
        return locator.first if resolved else locator

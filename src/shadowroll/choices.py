"""Choice Broker: hold at most one outstanding choice and route selections.

When a roll yields several live options the run cannot continue until a
human picks one. The broker keeps that pending choice, validates the
selection against the offered options, and hands the chosen entry back to
the resolver under the category the choice was raised for.
"""

from __future__ import annotations

import logging

from .exceptions import (
    ChoiceAlreadyPendingError,
    InvalidSelectionError,
    NoPendingChoiceError,
)
from .ledger import DeduplicationLedger
from .models import ChoiceOption, PendingChoice, TableResolution
from .resolver import TableResolver

logger = logging.getLogger("shadowroll")

Selection = int | str | ChoiceOption


def find_option(choice: PendingChoice, selection: Selection) -> ChoiceOption:
    """Look up the offered option a selection refers to.

    ``selection`` may be a zero-based index, an option name (case
    insensitive) or one of the choice's own option objects.

    Raises:
        InvalidSelectionError: If the selection is not among the options.
    """
    names = [o.name for o in choice.options]

    if isinstance(selection, ChoiceOption):
        if selection in choice.options:
            return selection
    elif isinstance(selection, bool):
        pass
    elif isinstance(selection, int):
        if 0 <= selection < len(choice.options):
            return choice.options[selection]
    elif isinstance(selection, str):
        wanted = selection.strip().lower()
        for option in choice.options:
            if option.name.lower() == wanted:
                return option
        if wanted.isdigit() and 0 <= int(wanted) < len(choice.options):
            return choice.options[int(wanted)]

    raise InvalidSelectionError(
        f"'{selection}' is not one of the offered options: {', '.join(names)}",
        details={"selection": str(selection), "options": names},
    )


class ChoiceBroker:
    """Holds the single outstanding choice of a progression run."""

    def __init__(self) -> None:
        self._current: PendingChoice | None = None

    @property
    def current(self) -> PendingChoice | None:
        return self._current

    @property
    def is_pending(self) -> bool:
        return self._current is not None

    def present(self, choice: PendingChoice) -> None:
        """Make ``choice`` the outstanding choice.

        Raises:
            ChoiceAlreadyPendingError: If another choice is still unanswered.
        """
        if self._current is not None:
            raise ChoiceAlreadyPendingError(
                f"A choice is already pending: {self._current.header}",
                details={"pending": [o.name for o in self._current.options]},
            )
        self._current = choice
        logger.info(f"Choice presented: {choice.header} ({len(choice.options)} options)")

    def select(self, selection: Selection) -> tuple[PendingChoice, ChoiceOption]:
        """Validate a selection and clear the outstanding choice.

        An invalid selection leaves the choice pending.

        Raises:
            NoPendingChoiceError: If there is nothing to select.
            InvalidSelectionError: If the selection is not an offered option.
        """
        if self._current is None:
            raise NoPendingChoiceError("There is no pending choice to resolve")

        choice = self._current
        option = find_option(choice, selection)
        self._current = None
        logger.info(f"Selected '{option.name}' for: {choice.header}")
        return choice, option

    async def resolve(
        self,
        selection: Selection,
        resolver: TableResolver,
        ledger: DeduplicationLedger,
    ) -> TableResolution:
        """Select an option and resolve its entry as the choice's category."""
        choice, option = self.select(selection)
        return await resolver.resolve_entry(option.entry, ledger, context=choice.context)

    def clear(self) -> None:
        self._current = None

"""
troupesync.services.log_sheet — Log Sheet Hook
===============================================

After a sync persists, troupes with a ``log_sheet_uri`` get a spreadsheet
rendering of their events and audience.  Rendering lives outside this
package; implementations subclass :class:`LogSheetService`.  Failures are
logged by the caller and never undo a sync.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence


class LogSheetService(ABC):
    @abstractmethod
    def create_log(self, troupe: dict, events: Sequence[dict], audience: Sequence[dict]) -> str:
        """Create the sheet and return its URI."""

    @abstractmethod
    def update_log(self, troupe: dict, events: Sequence[dict], audience: Sequence[dict]) -> None:
        """Rewrite the sheet.  Events by ascending start date, audience by ascending Total."""

    @abstractmethod
    def delete_log(self, troupe: dict, events: Sequence[dict], audience: Sequence[dict]) -> None:
        """Remove the sheet."""

# ReportGuard Module
# Validates report submissions and suppresses recent repeats from the same reporter
# Store access is limited to a single read through the store passed in

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple
import re
import uuid


# Report categories accepted by the API
REPORT_TYPES = ('aimbot', 'wallhack', 'macro', 'glitch', 'goodplayer')
# Categories that count towards the negative total
NEGATIVE_REPORT_TYPES = ('aimbot', 'wallhack', 'macro', 'glitch')

# Embark ID: 3-16 letters, digits or underscores, then # and four digits
EMBARK_ID_PATTERN = re.compile(r'[A-Za-z0-9_]{3,16}#[0-9]{4}')
# Canonical hyphenated UUID text
UUID_PATTERN = re.compile(r'[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}')

INVALID_EMBARK_ID_MESSAGE = "The ID entered does not follow Embark ID's proper format"
INVALID_REPORTER_MESSAGE = "Invalid reporter ID"
INVALID_REPORT_TYPE_MESSAGE = "Invalid report type"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReportGuard:
    """
    Submission guard for player reports.

    Rejects:
    - Embark IDs that are not name#NNNN
    - Reporter IDs that are not UUIDs
    - Report types outside the fixed category set
    - Repeats of the same (embark ID, reporter, type) inside the duplicate window
    """

    # Trailing window in which an identical report counts as a duplicate
    DUPLICATE_WINDOW_HOURS = 24

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        """Initialize the guard with an optional clock (defaults to UTC now)."""
        self._clock = clock or utc_now

    def now(self) -> datetime:
        return self._clock()

    @staticmethod
    def validate_embark_id(value) -> bool:
        if not value or not isinstance(value, str):
            return False
        return EMBARK_ID_PATTERN.fullmatch(value) is not None

    @staticmethod
    def validate_reporter_id(value) -> bool:
        if not value or not isinstance(value, str):
            return False
        if UUID_PATTERN.fullmatch(value) is None:
            return False
        try:
            uuid.UUID(value)
        except ValueError:
            return False
        return True

    @staticmethod
    def validate_report_type(value) -> bool:
        return isinstance(value, str) and value in REPORT_TYPES

    def validate_submission(
        self,
        embark_id,
        reporter_id,
        report_type
    ) -> Tuple[bool, Optional[str]]:
        """
        Validate the three submitted fields without touching the store.

        Fields are checked in order (embark ID, reporter, report type) and the
        first failure is returned.

        Args:
            embark_id: Player identifier being reported
            reporter_id: UUID of the submitting client
            report_type: Report category

        Returns:
            Tuple of (is_valid, error_message)
            - is_valid: True if every field is well formed
            - error_message: Message for the first invalid field, None if valid
        """
        if not self.validate_embark_id(embark_id):
            return False, INVALID_EMBARK_ID_MESSAGE

        if not self.validate_reporter_id(reporter_id):
            return False, INVALID_REPORTER_MESSAGE

        if not self.validate_report_type(report_type):
            return False, INVALID_REPORT_TYPE_MESSAGE

        return True, None

    def duplicate_cutoff(self) -> datetime:
        return self.now() - timedelta(hours=self.DUPLICATE_WINDOW_HOURS)

    def is_duplicate(self, store, embark_id: str, reporter_id: str, report_type: str) -> bool:
        """
        Check whether this reporter already filed the same report recently.

        The window trails the current time, not the stored report's timestamp.
        The check and the following insert are separate store calls, so two
        concurrent submissions can both pass.

        Args:
            store: ReportStore (or compatible) used for the lookup
            embark_id: Validated Embark ID
            reporter_id: Validated reporter UUID
            report_type: Validated report type

        Returns:
            True if at least one matching report exists inside the window

        Raises:
            StoreError: If the store lookup fails
        """
        matches = store.find_recent_reports(embark_id, reporter_id, report_type, self.duplicate_cutoff())
        return bool(matches)


def negative_total(counts: dict) -> int:
    # goodplayer never counts towards the negative total
    return sum(int(counts.get(report_type, 0)) for report_type in NEGATIVE_REPORT_TYPES)

"""Exception and warning types raised by the clinical survival pipeline.

Structural problems (an unresolvable source column) and the complete absence
of usable data are fatal for the stage that hits them. A single degenerate
bootstrap draw is not: it is reported as a warning and recorded as a missing
value for that iteration only.
"""


class SchemaError(ValueError):
    """A required semantic field has no matching column in the raw records.

    Attributes:
        field: Semantic field name that could not be resolved
        candidates: Column names that were tried, in order
    """

    def __init__(self, field: str, candidates=()):
        self.field = field
        self.candidates = tuple(candidates)
        super().__init__(
            f"Required field '{field}' not found; tried columns {list(self.candidates)}"
        )


class InsufficientDataError(ValueError):
    """A filtered record set is empty or has no observed events.

    Attributes:
        stage: Name of the stage that required the data
        n_records: Number of records available after filtering
        n_events: Number of observed events among those records
    """

    def __init__(self, stage: str, reason: str, n_records: int = 0, n_events: int = 0):
        self.stage = stage
        self.reason = reason
        self.n_records = n_records
        self.n_events = n_events
        super().__init__(
            f"{stage}: {reason} (records={n_records}, events={n_events})"
        )


class DegenerateResampleWarning(UserWarning):
    """A bootstrap iteration could not be evaluated and was recorded as missing."""

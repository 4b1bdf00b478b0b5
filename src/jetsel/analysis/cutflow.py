"""
Cut-flow bookkeeping.

A CutFlowTracker counts, for an ordered list of named cuts, how many
events survived each of them. The event loop informs the tracker of
every cut outcome in order; the counts are turned into absolute and
relative efficiencies for the printed report.
"""

import math
import time


class CutFlowError(RuntimeError):
    """Raised when a tracker is driven out of its declared stage order."""


class CutFlowTracker:
    """
    Survival counts for an ordered sequence of cuts.

    Parameters
    ----------
    stage_names : list of str
        Cut descriptions in evaluation order.
    title : str
        Heading of the first report column.
    """

    def __init__(self, stage_names, title="Cut Flow"):
        self.title = title
        self.stage_names = list(stage_names)
        self.counts = [0] * len(self.stage_names)
        self.cursor = 0
        self.start_time = None

    def __len__(self):
        return len(self.stage_names)

    def next_event(self):
        """Start bookkeeping for a new event."""
        self.cursor = 0
        if self.start_time is None:
            self.start_time = time.perf_counter()

    def record_stage(self, did_fail):
        """
        Record the outcome of the next cut of the current event.

        Returns ``did_fail`` unchanged so the caller can use it as an
        early-exit signal.
        """
        if self.cursor >= len(self.counts):
            raise CutFlowError(
                f"'{self.title}' has {len(self.counts)} cuts; "
                "no cut left to record for this event"
            )
        if not did_fail:
            self.counts[self.cursor] += 1
        self.cursor += 1
        return did_fail

    def record_bulk_survival(self, n):
        """
        Record that the event survived the first ``n`` cuts.

        Returns True if the event did not survive all cuts.
        """
        if n < 0 or n > len(self.counts):
            raise CutFlowError(
                f"cannot survive {n} of {len(self.counts)} cuts in '{self.title}'"
            )
        for i in range(n):
            self.counts[i] += 1
        return n != len(self.counts)

    def efficiency(self):
        """Fraction of events surviving the last cut relative to the first."""
        if not self.counts or self.counts[0] == 0:
            return 1.0
        return self.counts[-1] / self.counts[0]

    def elapsed_ms(self):
        """Milliseconds since the first event, 0 before any event."""
        if self.start_time is None:
            return 0
        return int((time.perf_counter() - self.start_time) * 1000)

    def fractions(self):
        """
        Absolute and relative survival fractions.

        Returns
        -------
        (list of float, list of float)
            ``counts[i] / counts[0]`` and ``counts[i] / counts[i-1]``;
            the relative fraction of the first cut is 1. A zero
            denominator gives NaN.
        """
        absolute = [_ratio(n, self.counts[0]) for n in self.counts]
        relative = [1.0 if i == 0 else _ratio(n, self.counts[i - 1])
                    for i, n in enumerate(self.counts)]
        return absolute, relative

    def merge(self, other):
        """Add the counts of another tracker with the same cuts."""
        if other.title != self.title or other.stage_names != self.stage_names:
            raise CutFlowError(
                f"cannot merge cut flow '{other.title}' into '{self.title}'"
            )
        self.counts = [a + b for a, b in zip(self.counts, other.counts)]
        starts = [t for t in (self.start_time, other.start_time) if t is not None]
        self.start_time = min(starts) if starts else None
        return self

    def __iadd__(self, other):
        return self.merge(other)

    def format(self, csv=False):
        return format_report(self, csv=csv)

    def __str__(self):
        return format_report(self)


class MatchCountTracker(CutFlowTracker):
    """
    Cut flow over an ordered list of trigger-object labels.

    Stage ``i`` counts the events whose leading jets matched the first
    ``i + 1`` labels. Labels given as tree paths are reported by their
    last path component.
    """

    def __init__(self, labels, title="Trigger Objects"):
        super().__init__([label.rsplit("/", 1)[-1] for label in labels], title=title)

    def record(self, n_matched):
        return self.record_bulk_survival(n_matched)


def _ratio(num, den):
    if den == 0:
        return math.nan
    return num / den


def format_report(tracker, csv=False):
    """
    Render a cut flow as a fixed-width (or comma-separated) table.

    Columns: cut name, number of events, absolute and relative fraction.
    """
    absolute, relative = tracker.fractions()
    if csv:
        lines = [f"{tracker.title},# events,absolute,relative"]
        for name, n, fa, fr in zip(tracker.stage_names, tracker.counts, absolute, relative):
            lines.append(f"{name},{n},{fa:.6f},{fr:.6f}")
        return "\n".join(lines)

    width = max([25, len(tracker.title) + 3] + [len(name) + 3 for name in tracker.stage_names])
    lines = [f"{tracker.title:<{width}}{'# events':>12}{'absolute':>12}{'relative':>12}"]
    for name, n, fa, fr in zip(tracker.stage_names, tracker.counts, absolute, relative):
        lines.append(f"{name:<{width}}{n:>12}{fa:>12.6f}{fr:>12.6f}")
    return "\n".join(lines)

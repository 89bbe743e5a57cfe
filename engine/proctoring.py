"""
Proctoring monitor: counts how often a student leaves the exam page.

The exam page reports every visibility change. Each change to hidden is one
strike; at the threshold the monitor force-submits the session in the same
call. This deters casual tab switching only: a second device or screen
recording is out of its reach.
"""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ViolationNotice:
    count: int
    threshold: int
    submitted: bool

    @property
    def message(self):
        if self.submitted:
            return (f'You left the exam page {self.count} times. '
                    'Your exam has been submitted and marked as disqualified.')
        return (f'Warning: leaving the exam page is not allowed '
                f'(violation {self.count} of {self.threshold}).')

    def to_json(self):
        return {'count': self.count, 'threshold': self.threshold,
                'submitted': self.submitted, 'message': self.message}


class ProctoringMonitor:
    """Holds the one authoritative violation counter of a session.

    on_threshold is called synchronously, while the caller still holds the
    session lock, when the counter reaches the threshold.
    """

    def __init__(self, threshold=3, on_threshold=None, label=''):
        self.threshold = threshold
        self.on_threshold = on_threshold
        self.label = label
        self._count = 0
        self._active = False

    @property
    def violation_count(self):
        return self._count

    @property
    def active(self):
        return self._active

    def attach(self):
        self._active = True

    def detach(self):
        self._active = False

    def visibility_changed(self, hidden):
        """Feed one visibility change. Returns a ViolationNotice for a new strike, else None."""
        if not self._active or not hidden:
            return None
        self._count += 1
        reached = self._count >= self.threshold
        logger.info('Violation %d/%d in %s', self._count, self.threshold, self.label)
        if reached and self.on_threshold is not None:
            self.on_threshold()
        return ViolationNotice(self._count, self.threshold, submitted=reached)

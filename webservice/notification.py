"""
Outcome delivery for request units.

A unit can notify two independent listeners: an action-style target with
success/failure handler names, and an observer implementing ``on_completed``
and ``on_failure``. Neither is kept alive by the unit; a listener that has been
garbage collected by the time the unit finishes is skipped.
"""

import itertools
import weakref
from typing import Optional

import structlog

from .errors import InvalidArgument

logger = structlog.get_logger(__name__)


class RequestObserver:
    """
    Observer for request outcomes.

    Subclass and override the methods you care about. Both are no-ops here.
    """

    def on_completed(self, unit, payload):
        pass

    def on_failure(self, unit, error):
        pass


class AggregatingObserver(RequestObserver):
    """
    Observer that collects ``(unit, payload)`` and ``(unit, error)`` pairs in
    lists based on the outcome.
    """

    def __init__(self):
        self.completed = []
        self.failed = []

    @property
    def all_outcomes(self):
        return itertools.chain(self.completed, self.failed)

    def on_completed(self, unit, payload):
        self.completed.append((unit, payload))

    def on_failure(self, unit, error):
        self.failed.append((unit, error))


def _weak(obj, role: str):
    if obj is None:
        return None
    try:
        return weakref.ref(obj)
    except TypeError as e:
        raise InvalidArgument(f"The {role} must support weak references, got {type(obj).__name__}") from e


def _deref(ref):
    return ref() if ref is not None else None


class NotificationChannel:
    """The two listener slots of one unit, dispatched exactly once."""

    def __init__(self, target=None, success_handler: Optional[str] = None,
                 failure_handler: Optional[str] = None, observer=None):
        self._target_ref = None
        self._observer_ref = None
        self.success_handler = None
        self.failure_handler = None
        self._delivered = False

        self.set_target(target, success_handler, failure_handler)
        self.observer = observer

    def set_target(self, target, success_handler: Optional[str] = None, failure_handler: Optional[str] = None):
        for name in (success_handler, failure_handler):
            if name is not None and (not isinstance(name, str) or not name):
                raise InvalidArgument(f"Handler identifiers must be attribute names, got {name!r}")
        self._target_ref = _weak(target, 'target')
        self.success_handler = success_handler
        self.failure_handler = failure_handler

    @property
    def target(self):
        return _deref(self._target_ref)

    @property
    def observer(self):
        return _deref(self._observer_ref)

    @observer.setter
    def observer(self, observer):
        self._observer_ref = _weak(observer, 'observer')

    @property
    def delivered(self) -> bool:
        return self._delivered

    def dispatch_completed(self, unit, payload):
        self._dispatch(unit, payload, self.success_handler, 'on_completed')

    def dispatch_failed(self, unit, error):
        self._dispatch(unit, error, self.failure_handler, 'on_failure')

    def _dispatch(self, unit, outcome, handler_name, observer_method):
        if self._delivered:
            logger.warning("notification_already_delivered", url=unit.url)
            return
        self._delivered = True

        if self._target_ref is not None and handler_name is not None:
            self._deliver(unit, outcome, self._target_ref, handler_name, 'target')
        if self._observer_ref is not None:
            self._deliver(unit, outcome, self._observer_ref, observer_method, 'observer')

    def _deliver(self, unit, outcome, ref, method_name, slot):
        listener = ref()
        if listener is None:
            logger.debug("notification_skipped", url=unit.url, slot=slot, reason="listener_gone")
            return

        callback = getattr(listener, method_name, None)
        if not callable(callback):
            logger.warning("notification_skipped",
                           url=unit.url,
                           slot=slot,
                           reason="handler_missing",
                           handler=method_name)
            return

        try:
            callback(unit, outcome)
        except Exception as e:
            logger.error("notification_listener_error",
                         url=unit.url,
                         slot=slot,
                         handler=method_name,
                         error=str(e),
                         exc_info=True)

"""
Single place for scheduling: a registry of named, cancellable in-memory timers.
"""
import logging
import threading
from datetime import datetime, timezone
from threading import Timer
from typing import Any, Callable, Dict, List


class TaskManager:
    """
    Named threading.Timer registry. At most one timer per name: scheduling a name that
    already exists cancels the old timer first. Cancelling is safe for unknown names and
    from inside a running callback; a cancelled recurring task never reschedules itself.
    """

    def __init__(self):
        self.tasks: Dict[str, Timer] = {}
        self.logger = logging.getLogger("TaskManager")
        self._lock = threading.RLock()
        # Bumped on every schedule/cancel so a stale timer thread can tell it was superseded
        self._generations: Dict[str, int] = {}
        self._stopped = False

    def schedule_task(self, name: str, callback: Callable[[], Any], delay: float, one_time: bool = True) -> None:
        """Schedule a task to run after delay seconds; recurring tasks repeat every delay seconds."""
        with self._lock:
            if self._stopped:
                self.logger.warning(f"Task manager stopped; not scheduling {name}")
                return
            if name in self.tasks:
                self.logger.info(f"Cancelling existing task {name}")
                self.tasks[name].cancel()
            generation = self._generations.get(name, 0) + 1
            self._generations[name] = generation
            self._start_timer(name, generation, callback, delay, one_time)

    def schedule_recurring(self, name: str, callback: Callable[[], Any], interval: float) -> None:
        self.schedule_task(name, callback, interval, one_time=False)

    def _start_timer(self, name: str, generation: int, callback: Callable, delay: float, one_time: bool) -> None:
        scheduled_time = datetime.now().timestamp() + delay
        timer = Timer(delay, self._run_task, args=(name, generation, callback, delay, one_time))
        timer.daemon = True
        timer.name = f"task-{name}"
        timer.scheduled_time = scheduled_time
        self.tasks[name] = timer
        timer.start()
        self.logger.debug(f"Timer started for {name}, scheduled for {datetime.fromtimestamp(scheduled_time)}")

    def _is_current(self, name: str, generation: int) -> bool:
        return name in self.tasks and self._generations.get(name) == generation

    def _run_task(self, name: str, generation: int, callback: Callable, delay: float, one_time: bool) -> None:
        """Run the task and reschedule if it is recurring and still registered."""
        with self._lock:
            if not self._is_current(name, generation):
                return
            if one_time:
                del self.tasks[name]
        try:
            callback()
        except Exception as e:
            self.logger.exception(f"Error running task {name}: {e}")
        if one_time:
            return
        with self._lock:
            if self._stopped or not self._is_current(name, generation):
                self.logger.debug(f"Task {name} was cancelled during its run; not rescheduling")
                return
            self._start_timer(name, generation, callback, delay, one_time)

    def cancel_task(self, name: str) -> bool:
        """Cancel and forget a task. Returns False if no such task was registered."""
        with self._lock:
            self._generations[name] = self._generations.get(name, 0) + 1
            timer = self.tasks.pop(name, None)
        if timer is None:
            return False
        timer.cancel()
        self.logger.info(f"Cancelled task {name}")
        return True

    def has_task(self, name: str) -> bool:
        with self._lock:
            return name in self.tasks

    def get_active_timers(self) -> List[Dict[str, Any]]:
        """Return list of active timer names and their next run time (for API)."""
        with self._lock:
            items = list(self.tasks.items())
        result = []
        for name, timer in items:
            if getattr(timer, "scheduled_time", None) is not None:
                next_run = datetime.fromtimestamp(timer.scheduled_time, tz=timezone.utc)
                result.append({"name": name, "next_run_at": next_run})
        return result

    def stop(self) -> None:
        """Stop all scheduled tasks."""
        with self._lock:
            self._stopped = True
            timers = list(self.tasks.values())
            self.tasks.clear()
            for name in self._generations:
                self._generations[name] += 1
        for timer in timers:
            timer.cancel()
        self.logger.info(f"Task manager stopped ({len(timers)} timer(s) cancelled)")

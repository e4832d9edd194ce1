"""
tracking.py - Detection tick loop, identity assignment and events.

Every ``tick_interval_s`` the engine runs one detection pass in two
halves so the renderer can hide its proxies before the camera looks:

    update(now)  interval elapsed  -> ProxiesSuspended
    update(now)  next call         -> read newest frame, match, reconcile
                                      -> Instance* / RotationChanged events
                                      -> ProxiesResumed

Identity is a quantized key: (round(cx / position_margin),
round(cy / position_margin), round(template perimeter / size_margin)).
A matched key updates its instance in place; an unseen key creates a
new instance. Instances not refreshed by a pass are destroyed after
all of its matches have been applied.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, NamedTuple, Optional

import numpy as np

from .config import SegmentationConfig, TrackingConfig
from .detection import DetectionCandidate, Match, extract_candidates, match_candidate
from .errors import CalibrationRequiredError
from .geometry import angle_difference
from .scheduling import monotonic_now
from .templates import ObjectTemplate, TemplateStore

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------ #
# Identity and instances                                               #
# ------------------------------------------------------------------ #

class IdentityKey(NamedTuple):
    x: int
    y: int
    size: int

    @classmethod
    def quantize(
        cls,
        centroid: tuple[float, float],
        perimeter: float,
        position_margin: float,
        size_margin: float,
    ) -> "IdentityKey":
        return cls(
            int(round(centroid[0] / position_margin)),
            int(round(centroid[1] / position_margin)),
            int(round(perimeter / size_margin)),
        )


@dataclass
class TrackedInstance:
    """A physical object currently on the surface."""

    instance_id: int
    key: IdentityKey
    template: ObjectTemplate
    centroid: tuple[float, float]       # canvas space
    orientation: float                  # degrees
    last_seen_tick: int
    notified_orientation: float

    @property
    def pose(self) -> tuple[tuple[float, float], float]:
        return self.centroid, self.orientation

    @property
    def name(self) -> str:
        return self.template.name


# ---- events --------------------------------------------------------

@dataclass(frozen=True)
class InstanceAppeared:
    instance: TrackedInstance


@dataclass(frozen=True)
class InstanceUpdated:
    instance: TrackedInstance


@dataclass(frozen=True)
class InstanceDisappeared:
    instance: TrackedInstance


@dataclass(frozen=True)
class RotationChanged:
    instance: TrackedInstance
    previous: float
    current: float


@dataclass(frozen=True)
class ProxiesSuspended:
    tick: int


@dataclass(frozen=True)
class ProxiesResumed:
    tick: int


Subscriber = Callable[[object], None]


# ------------------------------------------------------------------ #
# Engine                                                               #
# ------------------------------------------------------------------ #

class TrackingEngine:
    """Owns the tracked-instance table and publishes its changes.

    Parameters
    ----------
    source : object with .read()
        Returns the newest BGR camera frame.
    store : TemplateStore
        Read-only while tracking.
    profile : CalibrationProfile or None
        Must be set (with a base image) before ``start``.
    """

    def __init__(
        self,
        source,
        store: TemplateStore,
        profile=None,
        cfg: TrackingConfig | None = None,
        seg_cfg: SegmentationConfig | None = None,
    ):
        self.source = source
        self.store = store
        self.profile = profile
        self.cfg = cfg or TrackingConfig()
        self.seg_cfg = seg_cfg or SegmentationConfig()

        self._subscribers: list[tuple[Subscriber, Optional[type]]] = []
        self._instances: dict[IdentityKey, TrackedInstance] = {}
        self._next_id = 1
        self._tick = 0

        self.active = False
        self._pending = False
        self._next_tick_at: Optional[float] = None

        self.last_candidates = []
        self.last_mask: Optional[np.ndarray] = None

    # ---- subscription ----------------------------------------------

    def subscribe(self, callback: Subscriber, event_type: Optional[type] = None) -> Callable[[], None]:
        """Register ``callback`` for every event, or only for ``event_type``.

        Returns a function that removes the subscription.
        """
        entry = (callback, event_type)
        self._subscribers.append(entry)

        def unsubscribe():
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def _emit(self, event, out: list):
        out.append(event)
        for callback, event_type in list(self._subscribers):
            if event_type is None or isinstance(event, event_type):
                callback(event)

    # ---- table -----------------------------------------------------

    @property
    def instances(self) -> list[TrackedInstance]:
        return sorted(self._instances.values(), key=lambda i: i.instance_id)

    @property
    def tick(self) -> int:
        return self._tick

    def get(self, key: IdentityKey) -> Optional[TrackedInstance]:
        return self._instances.get(key)

    # ---- control ---------------------------------------------------

    def start(self, now: Optional[float] = None):
        """Begin ticking. The first pass runs one interval from ``now``.

        Raises
        ------
        CalibrationRequiredError
            If no calibrated profile with a base image is set.
        """
        if self.profile is None or self.profile.base_image is None:
            raise CalibrationRequiredError("Detection needs a calibrated surface")
        self.active = True
        self._pending = False
        self._next_tick_at = monotonic_now(now) + self.cfg.tick_interval_s
        logger.info("Detection started (%d templates, tick %.2fs)",
                    len(self.store), self.cfg.tick_interval_s)

    def stop(self) -> list:
        """Stop ticking and destroy every tracked instance."""
        events = []
        self.active = False
        self._pending = False
        for key in [i.key for i in self.instances]:
            self._emit(InstanceDisappeared(self._instances.pop(key)), events)
        logger.info("Detection stopped")
        return events

    def toggle(self, now: Optional[float] = None) -> list:
        if self.active:
            return self.stop()
        self.start(now)
        return []

    def update(self, now: Optional[float] = None) -> list:
        """Advance the tick loop. Returns the events emitted by this call."""
        events = []
        if not self.active:
            return events

        now = monotonic_now(now)

        if self._pending:
            self._pending = False
            self.process_frame(self.source.read(), events)
            self._emit(ProxiesResumed(self._tick), events)
            return events

        if now >= self._next_tick_at:
            self._next_tick_at += self.cfg.tick_interval_s
            if self._next_tick_at <= now:
                self._next_tick_at = now + self.cfg.tick_interval_s
            self._pending = True
            self._emit(ProxiesSuspended(self._tick + 1), events)

        return events

    # ---- detection pass --------------------------------------------

    def find_matches(self, frame: np.ndarray) -> list[Match]:
        """Segment ``frame`` and match its candidates under each template's quota."""
        if self.profile is None or self.profile.base_image is None:
            raise CalibrationRequiredError("Detection needs a calibrated surface")

        self.last_candidates = []
        smallest = self.store.smallest_area
        if smallest is None:
            return []

        rectified = self.profile.rectify(frame)
        candidates, self.last_mask = extract_candidates(
            self.profile.base_image,
            rectified,
            min_area=smallest * self.cfg.min_candidate_area_ratio,
            cfg=self.seg_cfg,
        )
        self.last_candidates = candidates

        matches = self.select_matches(candidates)
        logger.debug("Tick %d: %d candidates, %d matches",
                     self._tick + 1, len(candidates), len(matches))
        return matches

    def select_matches(self, candidates: list[DetectionCandidate]) -> list[Match]:
        """Match candidates (largest first) under each template's quota.

        The quota counts distinct identity keys, so a second contour that
        lands on a key its template already claimed this pass is dropped
        without using up an instance slot.
        """
        cfg = self.cfg
        claimed = defaultdict(set)
        matches = []
        for candidate in candidates:
            eligible = [
                t for t in self.store
                if len(claimed[id(t)]) < cfg.max_instances_per_template
            ]
            if not eligible:
                break
            match = match_candidate(candidate, eligible, cfg)
            if match is None:
                continue

            key = IdentityKey.quantize(candidate.centroid, match.template.perimeter,
                                       cfg.position_margin, cfg.size_margin)
            if key in claimed[id(match.template)]:
                continue
            claimed[id(match.template)].add(key)
            matches.append(match)

        return matches

    def process_frame(self, frame: Optional[np.ndarray], events: Optional[list] = None) -> list:
        """Run one full detection pass on ``frame``.

        A missing frame skips the pass and leaves the table untouched.
        """
        events = [] if events is None else events
        if frame is None:
            logger.warning("No camera frame for detection tick, skipped")
            return events
        return self.reconcile(self.find_matches(frame), events)

    def reconcile(self, matches: list[Match], events: Optional[list] = None) -> list:
        """Apply one pass worth of matches to the instance table."""
        events = [] if events is None else events
        self._tick += 1
        tick = self._tick
        cfg = self.cfg

        for match in matches:
            centroid = match.candidate.centroid
            orientation = match.candidate.orientation
            key = IdentityKey.quantize(centroid, match.template.perimeter,
                                       cfg.position_margin, cfg.size_margin)

            instance = self._instances.get(key)
            if instance is not None and instance.last_seen_tick == tick:
                # one instance per key, later matches on the same key are dropped
                continue
            if instance is not None and instance.template is not match.template:
                self._emit(InstanceDisappeared(self._instances.pop(key)), events)
                instance = None

            if instance is None:
                instance = self._find_drifted(match.template, centroid, key.size, tick)
                if instance is not None:
                    del self._instances[instance.key]
                    instance.key = key
                    self._instances[key] = instance

            if instance is None:
                instance = TrackedInstance(
                    instance_id=self._next_id,
                    key=key,
                    template=match.template,
                    centroid=centroid,
                    orientation=orientation,
                    last_seen_tick=tick,
                    notified_orientation=orientation,
                )
                self._next_id += 1
                self._instances[key] = instance
                logger.info("Instance %d (%s) appeared at %s",
                            instance.instance_id, instance.name, key)
                self._emit(InstanceAppeared(instance), events)
                continue

            instance.centroid = centroid
            instance.orientation = orientation
            instance.last_seen_tick = tick
            self._emit(InstanceUpdated(instance), events)

            if angle_difference(orientation, instance.notified_orientation) > cfg.rotation_threshold_deg:
                previous = instance.notified_orientation
                instance.notified_orientation = orientation
                self._emit(RotationChanged(instance, previous, orientation), events)

        for key in [k for k, i in self._instances.items() if i.last_seen_tick != tick]:
            instance = self._instances.pop(key)
            logger.info("Instance %d (%s) disappeared", instance.instance_id, instance.name)
            self._emit(InstanceDisappeared(instance), events)

        return events

    def _find_drifted(
        self,
        template: ObjectTemplate,
        centroid: tuple[float, float],
        size_bucket: int,
        tick: int,
    ) -> Optional[TrackedInstance]:
        """An unrefreshed instance of ``template`` that drifted across a bucket edge."""
        margin = self.cfg.position_margin
        for instance in self.instances:
            if instance.template is not template or instance.last_seen_tick == tick:
                continue
            if instance.key.size != size_bucket:
                continue
            if (abs(instance.centroid[0] - centroid[0]) <= margin
                    and abs(instance.centroid[1] - centroid[1]) <= margin):
                return instance
        return None

"""Tracking client: position sampling, distance accrual, and batched sync.

The client watches device positions, turns each fix into a location sample,
accrues travelled distance with an accuracy gate, and flushes the
accumulated batch to the backend every SYNC_INTERVAL_S seconds and once more
on stop. A failed flush keeps the batch for the next attempt, so delivery is
at-least-once and the backend may see duplicates.

Platform concerns (position watch, battery/network probes, wake lock, local
storage) are injected so the loop runs the same under tests.
"""

import asyncio
import json
import logging
import math
import os
import time
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)

SYNC_INTERVAL_S = 30
MIN_DISTANCE_THRESHOLD_KM = 0.005   # 5 metres
MIN_ACCURACY_THRESHOLD_M = 50       # fixes at or above this accuracy do not count for distance
EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    # Same formula as processing.haversine_km; the client imports no server modules.
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


# ---------------------------------------------------------------------------
# Backend API
# ---------------------------------------------------------------------------

class TrackerApi:
    """Thin HTTP client for the tracking endpoints. Raises requests exceptions."""

    def __init__(self, base_url: str, token: str, timeout: float = 15, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()
        self.http.headers.update({
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        })

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        resp = self.http.request(method, f"{self.base_url}{path}", json=payload, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def start_tracking(self) -> dict:
        return self._request("POST", "/api/tracking/start")

    def update_locations(self, locations: list[dict]) -> dict:
        return self._request("POST", "/api/tracking/locations", {"locations": locations})

    def stop_tracking(self, distance: float) -> dict:
        return self._request("POST", "/api/tracking/stop", {"distance": distance})

    def get_session(self) -> dict:
        return self._request("GET", "/api/tracking/session")


# ---------------------------------------------------------------------------
# Injected platform capabilities
# ---------------------------------------------------------------------------

class EnvironmentProbe:
    """Connectivity and battery readings. Override for a real device."""

    def is_online(self) -> bool:
        return True

    def battery_level(self) -> Optional[int]:
        return None


class ExecutionLock:
    """Wake lock / foreground-execution handle held while tracking."""

    def acquire(self):
        pass

    def release(self):
        pass


class PositionSource:
    """Device position watch.

    ``watch(callback)`` starts delivering fixes as dicts with latitude,
    longitude, accuracy, speed, heading and timestamp (epoch ms) and returns
    a watch id; ``clear_watch(watch_id)`` stops delivery.
    """

    def watch(self, callback: Callable[[dict], None]):
        raise NotImplementedError

    def clear_watch(self, watch_id):
        raise NotImplementedError


class DurableState:
    """Small JSON key/value file that survives process restarts."""

    def __init__(self, path: str):
        self.path = path
        self._data = {}
        if os.path.exists(path):
            try:
                with open(path, encoding="utf-8") as f:
                    self._data = json.load(f)
            except (OSError, ValueError) as e:
                logger.warning("Ignoring unreadable tracking state %s: %s", path, e)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        self._data[key] = value
        self._flush()

    def remove(self, *keys: str):
        for key in keys:
            self._data.pop(key, None)
        self._flush()

    def _flush(self):
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self._data, f)
        os.replace(tmp, self.path)


# ---------------------------------------------------------------------------
# Distance accrual
# ---------------------------------------------------------------------------

class DistanceAccumulator:
    """Running distance with GPS noise rejection.

    Only fixes with a known accuracy below MIN_ACCURACY_THRESHOLD_M are
    accepted. Each accepted fix is measured against the previous accepted
    one and becomes the new reference; rejected fixes leave the reference
    alone. Hops of MIN_DISTANCE_THRESHOLD_KM or less are not added.
    """

    def __init__(self, state: DurableState, total_km: float = 0.0):
        self.state = state
        self.total_km = total_km
        self.reference = None

    def add(self, latitude: float, longitude: float, accuracy: Optional[float]) -> float:
        if accuracy is None or accuracy >= MIN_ACCURACY_THRESHOLD_M:
            return 0.0
        previous, self.reference = self.reference, (latitude, longitude)
        if previous is None:
            return 0.0

        dist = haversine_km(previous[0], previous[1], latitude, longitude)
        if dist <= MIN_DISTANCE_THRESHOLD_KM:
            return 0.0
        self.total_km += dist
        self.state.set("total_distance", self.total_km)
        return dist

    def reset(self, total_km: float = 0.0):
        self.total_km = total_km
        self.reference = None


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

class LocationTracker:
    def __init__(
        self,
        api: TrackerApi,
        positions: PositionSource,
        state: DurableState,
        probe: Optional[EnvironmentProbe] = None,
        lock: Optional[ExecutionLock] = None,
        sync_interval: float = SYNC_INTERVAL_S,
        clock: Callable[[], float] = time.time,
    ):
        self.api = api
        self.positions = positions
        self.state = state
        self.probe = probe or EnvironmentProbe()
        self.lock = lock or ExecutionLock()
        self.sync_interval = sync_interval
        self.clock = clock

        self.batch: list[dict] = []
        self.current_location: Optional[dict] = None
        self.is_tracking = False
        self.tracking_start_time: Optional[int] = None
        self.error: Optional[str] = None
        self.distance = DistanceAccumulator(state)

        self._watch_id = None
        self._sync_task: Optional[asyncio.Task] = None

    @property
    def total_distance(self) -> float:
        return self.distance.total_km

    # -- lifecycle ---------------------------------------------------------

    async def start_tracking(self) -> bool:
        """Open a server session and start sampling. Returns False on failure."""
        try:
            await asyncio.to_thread(self.api.start_tracking)
        except requests.RequestException as e:
            logger.error("Failed to start tracking: %s", e)
            self.error = "Failed to start tracking"
            self.state.remove("is_tracking", "tracking_start_time")
            return False

        self.tracking_start_time = int(self.clock() * 1000)
        self.distance.reset()
        self.state.set("tracking_start_time", self.tracking_start_time)
        self.state.set("total_distance", 0.0)
        self.state.set("is_tracking", True)
        self._begin()
        logger.info("Tracking started")
        return True

    async def recover_session(self) -> bool:
        """Resume an interrupted session from durable state without a new server start."""
        if not self.state.get("is_tracking") or not self.state.get("tracking_start_time"):
            return False
        self.tracking_start_time = int(self.state.get("tracking_start_time"))
        self.distance.reset(float(self.state.get("total_distance", 0.0)))
        self._begin()
        logger.info("Resumed tracking session started at %d", self.tracking_start_time)
        return True

    def _begin(self):
        self.is_tracking = True
        self.error = None
        # Samples a previous stop could not deliver go out with the next sync.
        self.batch = list(self.state.get("pending_locations", []))
        if self.batch:
            self.state.remove("pending_locations")
        self.lock.acquire()
        self._watch_id = self.positions.watch(self.on_position)
        self._sync_task = asyncio.get_running_loop().create_task(self._sync_loop())

    def _cleanup(self):
        # Watch and timer go first so nothing is produced once the lock is released.
        if self._watch_id is not None:
            self.positions.clear_watch(self._watch_id)
            self._watch_id = None
        if self._sync_task is not None:
            self._sync_task.cancel()
            self._sync_task = None
        self.lock.release()

    async def stop_tracking(self):
        """Stop sampling, flush what is left and close the server session."""
        self._cleanup()
        distance = self.total_distance

        if not await self.sync_locations():
            self.state.set("pending_locations", self.batch)
            logger.warning("Kept %d unsent locations for the next session", len(self.batch))

        try:
            await asyncio.to_thread(self.api.stop_tracking, distance)
        except requests.RequestException as e:
            # The server tolerates a later stop, and a new start closes the session anyway.
            logger.warning("Stop tracking request failed: %s", e)

        self.is_tracking = False
        self.tracking_start_time = None
        self.distance.reset()
        self.batch = []
        self.state.remove("is_tracking", "tracking_start_time", "total_distance")
        logger.info("Tracking stopped after %.3f km", distance)

    # -- sampling ----------------------------------------------------------

    def on_position(self, position: dict):
        latitude, longitude = position["latitude"], position["longitude"]
        accuracy = position.get("accuracy")
        sample = {
            "latitude": latitude,
            "longitude": longitude,
            "accuracy": accuracy,
            "speed": position.get("speed"),
            "heading": position.get("heading"),
            "timestamp": position.get("timestamp") or int(self.clock() * 1000),
            "batteryLevel": self.probe.battery_level(),
            "networkStatus": "online" if self.probe.is_online() else "offline",
        }
        self.distance.add(latitude, longitude, accuracy)
        self.current_location = sample
        self.batch.append(sample)

    # -- sync --------------------------------------------------------------

    async def _sync_loop(self):
        while True:
            await asyncio.sleep(self.sync_interval)
            await self.sync_locations()

    async def sync_locations(self) -> bool:
        """Send the current batch. On failure the samples stay queued."""
        to_send = list(self.batch)
        if not to_send:
            return True
        try:
            await asyncio.to_thread(self.api.update_locations, to_send)
        except requests.RequestException as e:
            logger.warning("Sync of %d locations failed, will retry: %s", len(to_send), e)
            return False
        # Samples that arrived while the request was in flight stay queued.
        del self.batch[:len(to_send)]
        logger.debug("Synced %d locations", len(to_send))
        return True

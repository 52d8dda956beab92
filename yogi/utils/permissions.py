from __future__ import annotations

import glob
import os
import sys
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from yogi.utils.structures import CameraAuthorizationStatus

AuthorizationObserver = Callable[[CameraAuthorizationStatus], None]


class CameraPermissions(ABC):
    """
    Host permission primitives for camera access.

    `status()` is a cheap query; `request()` asks the host to resolve a
    not-determined status and may answer asynchronously. Status changes are
    pushed to observers rather than polled.
    """

    def __init__(self) -> None:
        self._observers: List[AuthorizationObserver] = []
        self._observer_lock = threading.Lock()

    @abstractmethod
    def status(self) -> CameraAuthorizationStatus: ...

    @abstractmethod
    def request(self) -> None: ...

    def refresh(self) -> CameraAuthorizationStatus:
        """Re-check the host; providers that can detect outside changes notify observers here."""
        return self.status()

    def add_observer(self, observer: AuthorizationObserver) -> Callable[[], None]:
        with self._observer_lock:
            self._observers.append(observer)

        def remove() -> None:
            with self._observer_lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return remove

    def _notify(self, status: CameraAuthorizationStatus) -> None:
        with self._observer_lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(status)
            except Exception as exc:
                logger.exception("Authorization observer failed: {}", exc)


class StaticPermissions(CameraPermissions):
    """Config-driven permission state; `resolve()` stands in for the user's choice."""

    def __init__(
        self,
        status: CameraAuthorizationStatus = CameraAuthorizationStatus.AUTHORIZED,
        grant_on_request: Optional[CameraAuthorizationStatus] = None,
    ) -> None:
        super().__init__()
        self._status = status
        self._grant_on_request = grant_on_request
        self._lock = threading.Lock()
        self.requests = 0

    def status(self) -> CameraAuthorizationStatus:
        with self._lock:
            return self._status

    def request(self) -> None:
        with self._lock:
            self.requests += 1
            pending = self._status is CameraAuthorizationStatus.NOT_DETERMINED
        if pending and self._grant_on_request is not None:
            self.resolve(self._grant_on_request)

    def resolve(self, status: CameraAuthorizationStatus) -> None:
        with self._lock:
            changed = status is not self._status
            self._status = status
        if changed:
            logger.info("Camera authorization changed to {}", status.value)
            self._notify(status)


class DeviceNodePermissions(CameraPermissions):
    """
    Derives authorization from `/dev/video*` access on Linux.

    Other platforms prompt the user when the device is opened, so they report
    authorized and let acquisition surface any failure.
    """

    def __init__(self, pattern: str = "/dev/video*", platform: Optional[str] = None) -> None:
        super().__init__()
        self.pattern = pattern
        self.platform = platform or sys.platform
        self._last: Optional[CameraAuthorizationStatus] = None
        self._lock = threading.Lock()

    def status(self) -> CameraAuthorizationStatus:
        status = self._check_nodes()
        with self._lock:
            self._last = status
        return status

    def request(self) -> None:
        self.refresh()

    def refresh(self) -> CameraAuthorizationStatus:
        status = self._check_nodes()
        with self._lock:
            changed = self._last is not None and status is not self._last
            self._last = status
        if changed:
            logger.info("Camera authorization changed to {}", status.value)
            self._notify(status)
        return status

    def _check_nodes(self) -> CameraAuthorizationStatus:
        if not self.platform.startswith("linux"):
            return CameraAuthorizationStatus.AUTHORIZED
        nodes = sorted(glob.glob(self.pattern))
        if not nodes:
            return CameraAuthorizationStatus.AUTHORIZED
        if any(os.access(node, os.R_OK | os.W_OK) for node in nodes):
            return CameraAuthorizationStatus.AUTHORIZED
        return CameraAuthorizationStatus.DENIED


def build_permissions(auth_cfg: Dict[str, Any]) -> CameraPermissions:
    provider = str(auth_cfg.get("provider", "device")).lower()
    if provider == "static":
        status = CameraAuthorizationStatus(auth_cfg.get("status", "authorized"))
        grant = auth_cfg.get("grant_on_request")
        return StaticPermissions(status, CameraAuthorizationStatus(grant) if grant else None)
    if provider == "device":
        return DeviceNodePermissions(pattern=str(auth_cfg.get("device_pattern", "/dev/video*")))
    raise ValueError(f"Unsupported authorization provider: {provider}")

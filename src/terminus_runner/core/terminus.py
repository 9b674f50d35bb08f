"""
Terminus API client.

Thin wrapper around the Terminus server's device, model, screen and playlist
endpoints. Every request carries a bounded timeout so a slow server cannot
wedge the refresh coordinator.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from .config import ClientConfig
from .errors import TerminusError

log = logging.getLogger(__name__)


def parse_timestamp_ms(value: str) -> int:
    """Parse an ISO-8601 timestamp into epoch milliseconds."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


@dataclass
class Device:
    """Device record as reported by Terminus."""

    id: int
    model_id: int
    playlist_id: int
    friendly_id: str
    refresh_rate: int
    updated_at: str
    label: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Device":
        return cls(
            id=int(data["id"]),
            model_id=int(data["model_id"]),
            playlist_id=int(data["playlist_id"]),
            friendly_id=str(data["friendly_id"]),
            refresh_rate=int(data["refresh_rate"]),
            updated_at=str(data["updated_at"]),
            label=data.get("label") or "",
        )

    @property
    def last_refresh_ms(self) -> int:
        """Time of the device's last fetch, in epoch milliseconds."""
        return parse_timestamp_ms(self.updated_at)


@dataclass
class Model:
    """Display model (panel geometry)."""

    id: int
    width: int
    height: int
    rotation: int = 0
    name: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Model":
        return cls(
            id=int(data["id"]),
            width=int(data["width"]),
            height=int(data["height"]),
            rotation=int(data.get("rotation") or 0),
            name=data.get("name") or "",
        )

    @property
    def is_rotated(self) -> bool:
        """True when rotation is an odd multiple of 90 degrees."""
        return (self.rotation + 90) % 180 == 0


@dataclass
class Screen:
    """A published image."""

    id: int
    name: str
    label: str = ""
    model_id: Optional[int] = None
    filename: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Screen":
        model_id = data.get("model_id")
        return cls(
            id=int(data["id"]),
            name=data.get("name") or "",
            label=data.get("label") or "",
            model_id=int(model_id) if model_id is not None else None,
            filename=data.get("filename") or "",
        )


@dataclass(frozen=True)
class DeviceInfo:
    """Device identity plus the canvas size plugins must render at."""

    id: int
    friendly_id: str
    model_id: int
    playlist_id: int
    width: int
    height: int
    label: str = ""

    @classmethod
    def from_records(cls, device: Device, model: Model) -> "DeviceInfo":
        width, height = model.width, model.height
        if model.is_rotated:
            width, height = height, width
        return cls(
            id=device.id,
            friendly_id=device.friendly_id,
            model_id=device.model_id,
            playlist_id=device.playlist_id,
            width=width,
            height=height,
            label=device.label,
        )


class TerminusClient:
    """
    HTTP client for a Terminus server.

    All failures are raised as TerminusError with the operation in the message.
    """

    def __init__(self, config: ClientConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.base_url = config.base_url
        self.timeout = config.timeout
        self._session = session or requests.Session()
        self._session.headers.update({"Accept": "application/json"})

    def _request(self, method: str, path: str, action: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            if not response.content:
                return None
            return response.json()
        except (requests.RequestException, ValueError) as e:
            raise TerminusError(f"Failed to {action}: {e}") from e

    @staticmethod
    def _data(payload: Any, action: str) -> Any:
        if not isinstance(payload, dict) or "data" not in payload:
            raise TerminusError(f"Failed to {action}: response has no 'data' field")
        return payload["data"]

    def get_device(self, device_id: int) -> Device:
        action = f"get device {device_id}"
        payload = self._request("GET", f"/api/devices/{device_id}", action)
        try:
            return Device.from_api(self._data(payload, action))
        except (KeyError, TypeError, ValueError) as e:
            raise TerminusError(f"Failed to {action}: malformed device record ({e})") from e

    def update_device(self, device_id: int, **fields: Any) -> None:
        """Update device attributes, e.g. ``update_device(1, refresh_rate=900)``."""
        log.debug(f"Updating device {device_id}: {fields}")
        self._request(
            "PATCH",
            f"/api/devices/{device_id}",
            f"update device {device_id}",
            json={"device": fields},
        )

    def get_model(self, model_id: int) -> Model:
        action = f"get model {model_id}"
        payload = self._request("GET", f"/api/models/{model_id}", action)
        try:
            return Model.from_api(self._data(payload, action))
        except (KeyError, TypeError, ValueError) as e:
            raise TerminusError(f"Failed to {action}: malformed model record ({e})") from e

    def get_screens(self) -> List[Screen]:
        action = "get screens"
        payload = self._request("GET", "/api/screens", action)
        try:
            return [Screen.from_api(item) for item in self._data(payload, action)]
        except (KeyError, TypeError, ValueError) as e:
            raise TerminusError(f"Failed to {action}: malformed screen record ({e})") from e

    def add_screen(
        self,
        image_b64: str,
        name: str,
        label: Optional[str] = None,
        filename: Optional[str] = None,
        model_id: int = 1,
    ) -> int:
        """Upload a base64 PNG as a new screen and return its id."""
        action = f"add screen {name}"
        request_data = {
            "image": {
                "data": image_b64,
                "label": label or name,
                "name": name,
                "file_name": filename or f"{name}.png",
                "model_id": str(model_id),
            }
        }
        payload = self._request("POST", "/api/screens", action, json=request_data)
        try:
            return int(self._data(payload, action)["id"])
        except (KeyError, TypeError, ValueError) as e:
            raise TerminusError(f"Failed to {action}: malformed screen record ({e})") from e

    def remove_screen(self, screen_id: int) -> None:
        self._request("DELETE", f"/api/screens/{screen_id}", f"remove screen {screen_id}")

    def add_screen_to_playlist(self, playlist_id: int, screen_id: int) -> None:
        self._request(
            "POST",
            f"/playlists/{playlist_id}/items",
            f"add screen {screen_id} to playlist {playlist_id}",
            data={"playlist_item[screen_id]": str(screen_id)},
        )

    def remove_screen_from_playlist(self, playlist_id: int, screen_id: int) -> None:
        self._request(
            "DELETE",
            f"/playlists/{playlist_id}/items/{screen_id}",
            f"remove screen {screen_id} from playlist {playlist_id}",
        )

    def close(self) -> None:
        self._session.close()

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..utils.json import dumps_bytes, loads

PROTOCOL_VERSION = 1


@dataclass
class Envelope:
    v: int = PROTOCOL_VERSION
    type: str = ""
    topic: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None

    @staticmethod
    def from_raw(raw: Any) -> "Envelope":
        if isinstance(raw, dict):
            try:
                version = int(raw.get("v", PROTOCOL_VERSION))
            except (TypeError, ValueError):
                version = PROTOCOL_VERSION
            return Envelope(
                v=version,
                type=str(raw.get("type") or ""),
                topic=(str(raw["topic"]) if raw.get("topic") is not None else None),
                payload=(raw.get("payload") if isinstance(raw.get("payload"), dict) else None),
            )
        return Envelope()

    @staticmethod
    def from_text(text: str | bytes) -> "Envelope":
        """Parse a wire frame; anything that is not a JSON object yields an empty envelope."""
        try:
            return Envelope.from_raw(loads(text))
        except ValueError:
            return Envelope()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"v": self.v, "type": self.type}
        if self.topic is not None:
            data["topic"] = self.topic
        if self.payload is not None:
            data["payload"] = self.payload
        return data

    def to_json(self) -> str:
        return dumps_bytes(self.to_dict()).decode("utf-8")

"""Control messages exchanged during the bootstrap handshake.

Control records travel as JSON text over the same channel as binary
Automerge update blobs.  A frame that does not parse as a JSON object is a
raw update; a JSON object with an unknown or malformed ``type`` is a
protocol error.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import ClassVar, Union

from treesync.core.errors import ProtocolError

_HEX_RE = re.compile(r"^[0-9a-f]+$")


@dataclass(frozen=True)
class MirrorProposal:
    """Sent by a synced peer to a newly connected peer: "want my snapshot?"."""

    type: ClassVar[str] = "mirror-proposal"


@dataclass(frozen=True)
class MirrorApproval:
    type: ClassVar[str] = "mirror-approval"


@dataclass(frozen=True)
class MirrorDenial:
    type: ClassVar[str] = "mirror-denial"


@dataclass(frozen=True)
class DriveKey:
    """Locator (hex) of a published snapshot the receiver should pull."""

    locator: str
    type: ClassVar[str] = "drive-key"


@dataclass(frozen=True)
class MirrorComplete:
    type: ClassVar[str] = "mirror-complete"


ControlMessage = Union[MirrorProposal, MirrorApproval, MirrorDenial, DriveKey, MirrorComplete]

_EMPTY_VARIANTS: dict[str, type] = {
    cls.type: cls for cls in (MirrorProposal, MirrorApproval, MirrorDenial, MirrorComplete)
}


def encode_control(message: ControlMessage) -> str:
    """Serialize a control message to its JSON text frame."""
    record: dict = {"type": message.type}
    if isinstance(message, DriveKey):
        record["value"] = message.locator
    return json.dumps(record, sort_keys=True)


def parse_frame(frame: str | bytes) -> ControlMessage | None:
    """Classify a received frame.

    Returns the control message, or ``None`` when the frame is a raw update
    blob.

    Raises:
        ProtocolError: The frame is a JSON object but not a known control
            message.
    """
    record = _load_record(frame)
    if record is None:
        return None

    kind = record.get("type")
    if kind in _EMPTY_VARIANTS:
        return _EMPTY_VARIANTS[kind]()
    if kind == DriveKey.type:
        value = record.get("value")
        if not isinstance(value, str) or not value or not _HEX_RE.match(value):
            raise ProtocolError(f"drive-key carries an invalid locator: {value!r}")
        return DriveKey(locator=value)
    raise ProtocolError(f"unknown control message type: {kind!r}")


def _load_record(frame: str | bytes) -> dict | None:
    if isinstance(frame, (bytes, bytearray, memoryview)):
        try:
            text = bytes(frame).decode("utf-8")
        except UnicodeDecodeError:
            return None
    else:
        text = frame
    try:
        record = json.loads(text)
    except ValueError:
        return None
    if not isinstance(record, dict):
        return None
    return record

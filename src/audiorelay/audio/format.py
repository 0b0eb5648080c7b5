"""PCM audio format model and validation.

Every playback and recording connection starts with a JSON configuration
frame. The frame is validated into an immutable ``AudioFormat`` before any
subprocess is spawned, so a bad frame never costs a process.
"""

import json
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

Encoding = Literal["signed", "unsigned"]
Endianness = Literal["little", "big"]
BitDepth = Literal[16, 24, 32]

# Short tokens understood by aplay/arecord, accepted as aliases.
_ENCODING_ALIASES = {"s": "signed", "u": "unsigned"}
_ENDIANNESS_ALIASES = {"le": "little", "be": "big"}


class AudioFormatError(ValueError):
    """Raised when a configuration payload does not describe a valid format."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("; ".join(errors))


class AudioFormat(BaseModel):
    """Raw PCM stream format shared by the relay, its pipes and its clients."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    channels: int = Field(default=1, ge=1, le=8)
    sample_rate: int = Field(default=16_000, ge=8_000, le=192_000, alias="sampleRate")
    bit_depth: BitDepth = Field(default=16, alias="bitDepth")
    encoding: Encoding = "signed"
    endianness: Endianness = "little"
    device: str = Field(default="default", min_length=1)

    @field_validator("channels", "sample_rate", mode="before")
    @classmethod
    def reject_booleans(cls, v: Any) -> Any:  # noqa: ANN401
        """Refuse JSON booleans, which pydantic would otherwise read as 0/1."""
        if isinstance(v, bool):
            raise ValueError("must be an integer")
        return v

    @field_validator("encoding", mode="before")
    @classmethod
    def normalize_encoding(cls, v: Any) -> Any:  # noqa: ANN401
        """Accept the S/U tokens used by the ALSA tools."""
        if isinstance(v, str):
            return _ENCODING_ALIASES.get(v.lower(), v)
        return v

    @field_validator("endianness", mode="before")
    @classmethod
    def normalize_endianness(cls, v: Any) -> Any:  # noqa: ANN401
        """Accept the LE/BE tokens used by the ALSA tools."""
        if isinstance(v, str):
            return _ENDIANNESS_ALIASES.get(v.lower(), v)
        return v

    @property
    def format_token(self) -> str:
        """Sample format argument for aplay/arecord, e.g. ``S16_LE``."""
        sign = "S" if self.encoding == "signed" else "U"
        order = "LE" if self.endianness == "little" else "BE"
        return f"{sign}{self.bit_depth}_{order}"

    @property
    def bytes_per_frame(self) -> int:
        """Bytes holding one sample for every channel."""
        return self.channels * self.bit_depth // 8

    @property
    def bytes_per_second(self) -> int:
        return self.bytes_per_frame * self.sample_rate

    def duration_ms(self, byte_count: int) -> float:
        """Playback duration in milliseconds of ``byte_count`` bytes of PCM.

        Partial frames are counted fractionally; clients may split frames
        across chunks.
        """
        return byte_count / self.bytes_per_frame / self.sample_rate * 1000

    def command_args(self) -> list[str]:
        """Arguments selecting this format for aplay/arecord in raw mode."""
        # fmt: off
        return [
            "-t", "raw",
            "-c", str(self.channels),
            "-r", str(self.sample_rate),
            "-f", self.format_token,
            "-D", self.device,
        ]
        # fmt: on

    def to_payload(self) -> dict[str, Any]:
        """Wire representation used in configuration frames."""
        return self.model_dump(by_alias=True)


def _decode_payload(payload: str | bytes | Mapping[str, Any] | None) -> dict[str, Any]:
    if payload is None:
        return {}
    if isinstance(payload, Mapping):
        return dict(payload)

    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise AudioFormatError([f"configuration is not UTF-8 text: {e}"]) from e

    if not payload.strip():
        return {}

    try:
        decoded = json.loads(payload)
    except json.JSONDecodeError as e:
        raise AudioFormatError([f"configuration is not valid JSON: {e.msg}"]) from e

    if not isinstance(decoded, dict):
        raise AudioFormatError(["configuration must be a JSON object"])
    return decoded


def _format_errors(error: ValidationError) -> list[str]:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "configuration"
        if item["type"] == "extra_forbidden":
            messages.append(f"{location}: unknown field")
        else:
            messages.append(f"{location}: {item['msg']}")
    return messages


def validate_audio_format(
    payload: str | bytes | Mapping[str, Any] | None,
    defaults: AudioFormat | None = None,
) -> AudioFormat:
    """Build an AudioFormat from a partial configuration.

    Args:
        payload: JSON text or a mapping holding any subset of the format
            fields, by wire name (``sampleRate``) or attribute name
            (``sample_rate``).
        defaults: Format supplying values for omitted fields. Without it the
            model defaults apply (mono, 16 kHz, S16_LE, device "default").

    Returns:
        The validated, fully populated format.

    Raises:
        AudioFormatError: If the payload is malformed, has an unknown field,
            or any value is out of range. Nothing is partially accepted.
    """
    fields = _decode_payload(payload)

    try:
        requested = AudioFormat.model_validate(fields)
    except ValidationError as e:
        raise AudioFormatError(_format_errors(e)) from e

    if defaults is None:
        return requested

    merged = defaults.model_dump()
    merged.update(requested.model_dump(include=requested.model_fields_set))
    return AudioFormat.model_validate(merged)

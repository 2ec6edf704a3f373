"""Video encoder base class and the registry of encoder constructors."""

from __future__ import annotations

import abc
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional

from .options import StreamInfo, VideoOptions

InputDoneCallback = Callable[[], None]
OutputReadyCallback = Callable[[Any, int, bool], None]
EncoderCreateFunc = Callable[[VideoOptions, StreamInfo], "Encoder"]


class Encoder(abc.ABC):
    """Takes frames and hands encoded buffers to output_ready_callback.

    input_done_callback is called once the encoder has finished with an input
    frame; output_ready_callback receives (data, timestamp_us, keyframe).
    Until the application installs its own callbacks, calls are counted in
    unhandled_inputs and unhandled_outputs.
    """

    def __init__(self, options: VideoOptions) -> None:
        self.options = options
        self.unhandled_inputs = 0
        self.unhandled_outputs = 0
        self.input_done_callback: InputDoneCallback = self._count_input
        self.output_ready_callback: OutputReadyCallback = self._count_output

    def _count_input(self) -> None:
        self.unhandled_inputs += 1

    def _count_output(self, data: Any, timestamp_us: int, keyframe: bool) -> None:
        self.unhandled_outputs += 1

    @abc.abstractmethod
    def encode_buffer(self, mem: Any, info: StreamInfo, timestamp_us: int) -> None:
        """Queue one frame for encoding."""

    def close(self) -> None:
        """Finish any pending work; the base encoder holds nothing to release."""

    def __enter__(self) -> "Encoder":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class EncoderFactory:
    """Maps encoder names to the callables that construct them."""

    def __init__(self) -> None:
        self._encoders: Dict[str, EncoderCreateFunc] = {}

    def register_encoder(self, name: str, create_func: EncoderCreateFunc) -> None:
        self._encoders[name] = create_func

    def create_encoder(self, name: str) -> Optional[EncoderCreateFunc]:
        """Return the constructor registered under name, or None."""
        return self._encoders.get(name)

    def has_encoder(self, name: str) -> bool:
        return name in self._encoders

    @property
    def encoders(self) -> Mapping[str, EncoderCreateFunc]:
        return MappingProxyType(self._encoders)


_FACTORY = EncoderFactory()


def get_factory() -> EncoderFactory:
    """Return the process-wide encoder factory."""
    return _FACTORY


def register_encoder(name: str, create_func: EncoderCreateFunc) -> EncoderCreateFunc:
    """Register create_func with the global factory and return it unchanged."""
    _FACTORY.register_encoder(name, create_func)
    return create_func
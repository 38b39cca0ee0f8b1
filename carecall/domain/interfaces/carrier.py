"""
Carrier Interfaces
Abstract base classes for outbound call placement and the live audio leg
"""
from abc import ABC, abstractmethod
from typing import Optional


class CarrierProvider(ABC):
    """Abstract base class for telephony carriers"""

    @abstractmethod
    async def place_call(
        self,
        to_number: str,
        call_session_id: str,
        from_number: Optional[str] = None
    ) -> str:
        """
        Initiate an outbound call

        Args:
            to_number: Destination phone number (E.164)
            call_session_id: Session the carrier webhooks will reference
            from_number: Caller ID override

        Returns:
            Carrier call identifier
        """
        pass

    @abstractmethod
    async def say_and_hangup(self, call_sid: str, message: str) -> bool:
        """Replace the live call's instructions with a spoken notice and hang up."""
        pass

    @abstractmethod
    async def hangup(self, call_sid: str) -> bool:
        """End an active call"""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name"""
        pass


class CarrierAudioLeg(ABC):
    """
    The carrier side of one live call.

    Outbound audio is queued and drained by a sender task so a barge-in
    can drop everything not yet written to the socket.
    """

    @abstractmethod
    def start(self, stream_id: str) -> None:
        """Bind the carrier stream id and start draining queued audio."""
        pass

    @abstractmethod
    async def enqueue_audio(self, audio_chunk: bytes) -> None:
        """Queue narrow-band audio for playback to the caller."""
        pass

    @abstractmethod
    async def clear(self) -> int:
        """
        Discard queued playback and tell the carrier to flush its buffer.

        Returns:
            Number of queued chunks dropped locally
        """
        pass

    @abstractmethod
    async def close(self, code: int = 1000) -> None:
        """Close the carrier socket."""
        pass

    @property
    @abstractmethod
    def is_open(self) -> bool:
        pass

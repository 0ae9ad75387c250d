"""Last-known per-channel state, as commanded by the session."""

import logging
from dataclasses import replace
from typing import Dict

from usmu.models import Channel, ChannelState

logger = logging.getLogger(__name__)


class ChannelStateView:
    """Cache of the last state each channel was successfully commanded into.

    Entries reflect what the session sent, not what the device reports. Any
    out-of-band change (front-panel reset, power cycle) makes them stale, so
    they are only consulted by the optional enable/disable fast path.
    """

    def __init__(self) -> None:
        self._states: Dict[Channel, ChannelState] = {channel: ChannelState() for channel in Channel}

    def get(self, channel: Channel) -> ChannelState:
        """Get the last known state of a channel.

        Args:
            channel: Channel or channel name

        Returns:
            ChannelState; fields are None when unknown
        """
        return self._states[Channel.parse(channel)]

    def record(self, channel: Channel, **fields: object) -> ChannelState:
        """Merge newly commanded fields into a channel's entry.

        Args:
            channel: Channel that was commanded
            **fields: ChannelState fields to overwrite

        Returns:
            Updated ChannelState
        """
        channel = Channel.parse(channel)
        state = replace(self._states[channel], **fields)
        self._states[channel] = state
        logger.debug(f"{channel.value} state now {state}")
        return state

    def reset(self) -> None:
        """Forget everything, as after an instrument reset."""
        self._states = {channel: ChannelState() for channel in Channel}
        logger.debug("Channel state cleared")

    def snapshot(self) -> Dict[Channel, ChannelState]:
        """Get a copy of all entries."""
        return dict(self._states)

    def __len__(self) -> int:
        return len(self._states)

"""Discord command telemetry decorator."""
from __future__ import annotations

import functools
# Wrapped command annotations resolve against this module, so keep Optional importable.
from typing import Any, Callable, Optional  # noqa: F401

import discord

from .telemetry import get_telemetry


def track_command(func: Callable) -> Callable:
    """Record usage and outcome of a slash command."""

    @functools.wraps(func)
    async def wrapper(interaction: discord.Interaction, *args, **kwargs) -> Any:
        telemetry = get_telemetry()
        command_name = func.__name__
        chat_id = interaction.user.id
        success = False
        try:
            result = await func(interaction, *args, **kwargs)
            success = True
            return result
        except Exception as exc:
            telemetry.track_error(
                type(exc).__name__,
                command=command_name,
                chat_id=chat_id,
                error_details=str(exc),
            )
            raise
        finally:
            telemetry.track_command(command_name, chat_id, success=success)

    return wrapper


__all__ = ["track_command"]

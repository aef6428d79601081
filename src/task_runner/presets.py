from typing import List, Optional

from pydantic import BaseModel, Field

from task_runner.errors import InvalidPresetError


class Preset(BaseModel):
    """
    A named alias for a fixed cron expression.
    """
    name: str = Field(..., description="Preset name, e.g. '@daily'")
    description: str = Field(..., description="Human readable summary of the schedule")
    cron: str = Field(..., description="Cron expression the preset stands for")


DEFAULT_PRESETS: List[Preset] = [
    Preset(name="@midnight", description="Every day at midnight (00:00)", cron="0 0 * * *"),
    Preset(name="@daily", description="Every day at midnight (00:00)", cron="0 0 * * *"),
    Preset(name="@hourly", description="Every hour at minute 0", cron="0 * * * *"),
    Preset(name="@weekly", description="Every Sunday at midnight", cron="0 0 * * 0"),
    Preset(name="@monthly", description="First day of every month at midnight", cron="0 0 1 * *"),
    Preset(name="@yearly", description="January 1st at midnight", cron="0 0 1 1 *"),
]


def get_preset(name: str) -> Optional[Preset]:
    return next((preset for preset in DEFAULT_PRESETS if preset.name == name), None)


def is_valid_preset(name: str) -> bool:
    return get_preset(name) is not None


def resolve_preset(name: str) -> str:
    """
    Return the cron expression behind a preset name.

    Raises:
        InvalidPresetError: If the name is not a known preset.
    """
    preset = get_preset(name)
    if preset is None:
        raise InvalidPresetError(name)
    return preset.cron

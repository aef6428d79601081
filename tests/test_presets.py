import pytest

from task_runner.errors import InvalidPresetError
from task_runner.presets import DEFAULT_PRESETS, get_preset, is_valid_preset, resolve_preset


@pytest.mark.parametrize(
    "name, cron",
    [
        ("@midnight", "0 0 * * *"),
        ("@daily", "0 0 * * *"),
        ("@hourly", "0 * * * *"),
        ("@weekly", "0 0 * * 0"),
        ("@monthly", "0 0 1 * *"),
        ("@yearly", "0 0 1 1 *"),
    ],
)
def test_resolve_preset(name, cron):
    assert resolve_preset(name) == cron
    assert is_valid_preset(name) is True


def test_unknown_preset():
    assert get_preset("@fortnightly") is None
    assert is_valid_preset("@fortnightly") is False
    with pytest.raises(InvalidPresetError) as exc_info:
        resolve_preset("@fortnightly")
    assert str(exc_info.value) == "Invalid preset: @fortnightly"


def test_presets_are_unique_and_described():
    names = [preset.name for preset in DEFAULT_PRESETS]
    assert len(names) == len(set(names))
    assert all(preset.description for preset in DEFAULT_PRESETS)

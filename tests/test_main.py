from config_manager import MediaSettings
from main import run_options


def test_run_options_defaults():
    assert run_options(MediaSettings.from_config({})) == {
        "host": "0.0.0.0",
        "port": 4000,
        "debug": False,
        "allow_unsafe_werkzeug": True,
    }


def test_unsafe_werkzeug_can_be_switched_off():
    settings = MediaSettings.from_config({"ALLOW_UNSAFE_WERKZEUG": "false", "PORT": "8080", "DEBUG": "yes"})
    options = run_options(settings)
    assert options["allow_unsafe_werkzeug"] is False
    assert options["port"] == 8080
    assert options["debug"] is True

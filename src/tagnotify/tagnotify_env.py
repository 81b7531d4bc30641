from pathlib import Path
import json
import os
import tomllib
from datetime import tzinfo
from pydantic import BaseModel, Field, ValidationError
from typing import Literal, Optional
from jinja2 import Environment
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from dateutil import tz
from tzlocal import get_localzone_name

from .model import Rule
from .shared import log_msg


# ─── Config Schema ─────────────────────────────────────────────────
class IndexConfig(BaseModel):
    root: str = ""
    scope: Literal["entire-vault", "selected-folders"] = "entire-vault"
    included_folders: list[str] = []
    excluded_folders: list[str] = ["templates", "archive"]
    date_formats: list[str] = ["%Y-%m-%d", "%d.%m.%Y", "%m/%d/%Y"]
    batch_size: int = Field(10, ge=1)
    rescan_interval: float = Field(5.0, gt=0)


class DispatchConfig(BaseModel):
    interval: float = Field(30.0, gt=0)
    debounce: float = Field(1.0, ge=0)
    paused: bool = False


class DeliveryConfig(BaseModel):
    app_name: str = "tagnotify"
    system_command: str = (
        "notify-send --app-name={app_name} --expire-time={timeout_ms} {app_name} {message}"
    )
    persistent: bool = False
    timeout: int = Field(10, ge=0)


class TagnotifyConfig(BaseModel):
    title: str = "Tagnotify Configuration"
    default_time: str = Field("09:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    timezone: str = ""
    privacy_mode: bool = False
    index: IndexConfig = Field(default_factory=IndexConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    rules: list[Rule] = []


# ─── Commented Template ────────────────────────────────────
CONFIG_TEMPLATE = """\
title = {{ title | q }}

# default_time: str = "HH:MM"
# used for date-only values when a rule has no default_time of its own
default_time = {{ default_time | q }}

# timezone: str = "" (local) | "Europe/Berlin" | ...
# dates carrying an explicit UTC offset are converted into this zone
timezone = {{ timezone | q }}

# privacy_mode: bool = true | false
# when true the schedule is never written to disk
privacy_mode = {{ privacy_mode | lower }}

[index]
# root: str = path to the folder of markdown notes
root = {{ index.root | q }}

# scope: str = "entire-vault" | "selected-folders"
scope = {{ index.scope | q }}

# folders relative to root
included_folders = {{ index.included_folders | q }}
excluded_folders = {{ index.excluded_folders | q }}

# strptime formats tried after ISO 8601
date_formats = {{ index.date_formats | q }}

# files indexed between cooperative yields
batch_size = {{ index.batch_size }}

# seconds between scans for changed files while running
rescan_interval = {{ index.rescan_interval }}

[dispatch]
# seconds between checks for due notifications
interval = {{ dispatch.interval }}

# seconds of quiet after document changes before rebuilding
debounce = {{ dispatch.debounce }}

# paused: bool = true | false
paused = {{ dispatch.paused | lower }}

[delivery]
app_name = {{ delivery.app_name | q }}

# command for the "system" channel; arguments may use
# {app_name} {message} {title} {field} {path} {fire_time} {id} {timeout_ms}
system_command = {{ delivery.system_command | q }}

# persistent: bool = true | false
# when false system notifications expire after 10 seconds; when true they
# stay for `timeout` seconds, and timeout = 0 keeps them until dismissed
persistent = {{ delivery.persistent | lower }}
timeout = {{ delivery.timeout }}

# Each [[rules]] table watches one date field.
#   field:            frontmatter key or inline #field:value tag
#   default_time:     "HH:MM" for date-only values (optional)
#   offsets:          signed ISO 8601 durations, e.g. ["-P1D", "-PT30M"]
#   repeat:           "none" | "daily" | "weekly" | "monthly" | "yearly"
#   message_template: may use {title} {field} {date} {path}
#   channels:         ["in-app", "system"]
#   ignore_year:      true for birthdays and anniversaries
{% for rule in rules %}
[[rules]]
id = {{ rule.id | q }}
field = {{ rule.field | q }}
{% if rule.default_time %}default_time = {{ rule.default_time | q }}
{% endif %}offsets = {{ rule.offsets | q }}
repeat = {{ rule.repeat | q }}
message_template = {{ rule.message_template | q }}
channels = {{ rule.channels | q }}
enabled = {{ rule.enabled | lower }}
ignore_year = {{ rule.ignore_year | lower }}
{% endfor %}
"""


def _toml_value(value) -> str:
    # JSON strings and arrays of strings are valid TOML
    return json.dumps(value, ensure_ascii=False)


_jinja = Environment(keep_trailing_newline=True)
_jinja.filters["q"] = _toml_value


def render_config(config: TagnotifyConfig) -> str:
    template = _jinja.from_string(CONFIG_TEMPLATE)
    return template.render(**config.model_dump()).strip() + "\n"


# ─── Save Config with Comments ───────────────────────────────


def save_config_from_template(config: TagnotifyConfig, path: Path):
    path.write_text(render_config(config), encoding="utf-8")
    print(f"✅ Config with comments written to: {path}")


# ─── Main Environment Class ───────────────────────────────


class TagnotifyEnvironment:
    def __init__(self):
        self._home = self._resolve_home()
        self._config: Optional[TagnotifyConfig] = None
        # set when config.toml could not be read and defaults stand in for it
        self.degraded = False

    @property
    def home(self) -> Path:
        return self._home

    @property
    def config_path(self) -> Path:
        return self.home / "config.toml"

    @property
    def schedule_path(self) -> Path:
        return self.home / "schedule.json"

    def ensure(self, init_config: bool = True):
        self.home.mkdir(parents=True, exist_ok=True)

        if init_config and not self.config_path.exists():
            save_config_from_template(TagnotifyConfig(), self.config_path)

    def load_config(self) -> TagnotifyConfig:
        # Step 1: Create the file if it doesn't exist
        if not os.path.exists(self.config_path):
            config = TagnotifyConfig()
            self.home.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w", encoding="utf-8") as f:
                f.write(render_config(config))
            print(f"✅ Created new config file at {self.config_path}")
            self._config = config
            return config

        # Step 2: Try to load and validate the config
        try:
            with open(self.config_path, "rb") as f:
                data = tomllib.load(f)
            config = TagnotifyConfig.model_validate(data)
        except (ValidationError, tomllib.TOMLDecodeError) as e:
            print(f"⚠️ Config error in {self.config_path}: {e}\nUsing defaults.")
            self.degraded = True
            self._config = TagnotifyConfig()
            # leave the broken file alone so the rules in it can be repaired
            return self._config

        self.degraded = False

        # Step 3: Always regenerate the canonical version
        rendered = render_config(config)

        with open(self.config_path, "r", encoding="utf-8") as f:
            current_text = f.read()

        if rendered != current_text:
            with open(self.config_path, "w", encoding="utf-8") as f:
                f.write(rendered)
            print(f"✅ Updated {self.config_path} with any missing defaults.")

        self._config = config
        return config

    def save_config(self, config: Optional[TagnotifyConfig] = None) -> bool:
        """
        Write config.toml from the template. Refused while the file on disk
        failed to load, so the defaults never replace the rules in it.
        """
        config = config or self.config
        if self.degraded:
            print(
                f"⚠️ Not saving: {self.config_path} has errors. "
                "Fix or remove it, then try again."
            )
            log_msg(f"config not saved, {self.config_path} failed to load")
            return False
        self.home.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(render_config(config), encoding="utf-8")
        self._config = config
        return True

    @property
    def config(self) -> TagnotifyConfig:
        if self._config is None:
            return self.load_config()
        return self._config

    @property
    def zone(self) -> tzinfo:
        name = self.config.timezone.strip()
        if name:
            try:
                return ZoneInfo(name)
            except (ZoneInfoNotFoundError, ValueError):
                print(f"⚠️ Unknown timezone {name!r}, using local time.")
        return tz.tzlocal()

    @property
    def zone_name(self) -> str:
        return self.config.timezone.strip() or get_localzone_name()

    def _resolve_home(self) -> Path:
        cwd = Path.cwd()
        if (cwd / "config.toml").exists() and (cwd / "schedule.json").exists():
            return cwd

        env_home = os.getenv("TAGNOTIFY_HOME")
        if env_home:
            return Path(env_home).expanduser()

        xdg_home = os.getenv("XDG_CONFIG_HOME")
        if xdg_home:
            return Path(xdg_home).expanduser() / "tagnotify"
        else:
            return Path.home() / ".config" / "tagnotify"

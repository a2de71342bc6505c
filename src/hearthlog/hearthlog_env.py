from pathlib import Path
import os
import tomllib
from pydantic import BaseModel, Field, ValidationError
from typing import Optional
from jinja2 import Template


# ─── Config Schema ─────────────────────────────────────────────────
class UIConfig(BaseModel):
    timezone: str = "local"
    datefmt: str = "%a %b %-d"
    timefmt: str = "%H:%M"


class AgendaConfig(BaseModel):
    lookback: str = Field("4w", pattern=r"^(\d+[wdhm])+$")
    completed_limit: int = Field(10, ge=0)


class LedgerConfig(BaseModel):
    strict_writes: bool = False


class NotificationsConfig(BaseModel):
    enabled: bool = True


class HearthlogConfig(BaseModel):
    title: str = "Hearthlog Configuration"
    ui: UIConfig = UIConfig()
    agenda: AgendaConfig = AgendaConfig()
    ledger: LedgerConfig = LedgerConfig()
    notifications: NotificationsConfig = NotificationsConfig()


# ─── Commented Template ────────────────────────────────────
CONFIG_TEMPLATE = """\
title = "{{ title }}"

[ui]
# timezone: str = 'local' | an IANA name such as 'Europe/Paris'
# Day and week boundaries (Today, Tomorrow, Monday 00:00) use this zone.
timezone = "{{ ui.timezone }}"

# strftime formats used by the command line
datefmt = "{{ ui.datefmt }}"
timefmt = "{{ ui.timefmt }}"

[agenda]
# lookback: str = how far back, from now, missed occurrences of a
# repeating item are searched when nothing has been done about them
# yet. Integers followed by 'w', 'd', 'h' or 'm', e.g. "4w" or "10d".
lookback = "{{ agenda.lookback }}"

# completed_limit: int = number of completed entries listed by the
# command line agenda; 0 lists them all.
completed_limit = {{ agenda.completed_limit }}

[ledger]
# strict_writes: bool = true | false
# When true, an action based on an outdated view of an occurrence is
# rejected instead of silently replacing the newer action.
strict_writes = {{ ledger.strict_writes | lower }}

[notifications]
# enabled: bool = true | false
# Notify the new responsible user when an action reassigns an item.
enabled = {{ notifications.enabled | lower }}
"""

# ─── Save Config with Comments ───────────────────────────────


def render_config(config: HearthlogConfig) -> str:
    template = Template(CONFIG_TEMPLATE)
    return template.render(**config.model_dump()).strip() + "\n"


def save_config_from_template(config: HearthlogConfig, path: Path):
    path.write_text(render_config(config), encoding="utf-8")
    print(f"✅ Config with comments written to: {path}")


# ─── Main Environment Class ───────────────────────────────


class HearthlogEnvironment:
    def __init__(self):
        self._home = self._resolve_home()
        self._config: Optional[HearthlogConfig] = None

    @property
    def home(self) -> Path:
        return self._home

    @property
    def config_path(self) -> Path:
        return self.home / "config.toml"

    @property
    def db_path(self) -> Path:
        return self.home / "hearthlog.db"

    def ensure(self, init_config: bool = True, init_db_fn: Optional[callable] = None):
        self.home.mkdir(parents=True, exist_ok=True)

        if init_config and not self.config_path.exists():
            save_config_from_template(HearthlogConfig(), self.config_path)

        if init_db_fn and not self.db_path.exists():
            init_db_fn(self.db_path)

    def load_config(self) -> HearthlogConfig:
        # Step 1: Create the file if it doesn't exist
        if not os.path.exists(self.config_path):
            config = HearthlogConfig()
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
            config = HearthlogConfig.model_validate(data)
        except (ValidationError, tomllib.TOMLDecodeError) as e:
            print(f"⚠️ Config error in {self.config_path}: {e}\nUsing defaults.")
            config = HearthlogConfig()

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

    @property
    def config(self) -> HearthlogConfig:
        if self._config is None:
            return self.load_config()
        return self._config

    def _resolve_home(self) -> Path:
        cwd = Path.cwd()
        if (cwd / "config.toml").exists() and (cwd / "hearthlog.db").exists():
            return cwd

        env_home = os.getenv("HEARTHLOG_HOME")
        if env_home:
            return Path(env_home).expanduser()

        xdg_home = os.getenv("XDG_CONFIG_HOME")
        if xdg_home:
            return Path(xdg_home).expanduser() / "hearthlog"
        else:
            return Path.home() / ".config" / "hearthlog"

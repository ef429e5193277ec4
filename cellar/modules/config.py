import configparser
import os

DEFAULT_LOCATIONS = [
    "/etc/cellar/cellar.conf",
    os.path.expanduser("~/.config/cellar/cellar.conf"),
]

DEFAULTS = {
    "paths": {
        "formula_dir": "~/.local/share/cellar/formulae",
        "state_dir": "~/.local/state/cellar",
        "cellar_dir": "~/.local/share/cellar/Cellar",
        "build_dir": "",
    },
    "build": {
        "jobs": "4",
        "make_jobs": "2",
        "keep_workspace": "false",
        "grace_period": "30",
        "python": "python3",
    },
    "fetch": {
        "retries": "3",
        "backoff": "1.0",
        "timeout": "60",
    },
    "logging": {
        "level": "info",
        "log_file": "~/.local/state/cellar/cellar.log",
        "log_to_file": "true",
        "log_to_console": "false",
        "color_output": "true",
        "log_format": "text",
        "timestamp_utc": "false",
        "max_log_size_kb": "0",
    },
}


class CellarConfig:
    def __init__(self, locations=None):
        self.locations = locations or self._default_locations()
        self.config = configparser.ConfigParser()
        self.loaded_from = None
        self.reload()

    @staticmethod
    def _default_locations():
        env = os.environ.get("CELLAR_CONF")
        if env:
            return [env] + DEFAULT_LOCATIONS
        return list(DEFAULT_LOCATIONS)

    def reload(self):
        """(Re)load built-in defaults, then the first config file found."""
        self.config = configparser.ConfigParser()
        self.config.read_dict(DEFAULTS)
        self.loaded_from = None
        for path in self.locations:
            if os.path.isfile(path):
                self.config.read(path)
                self.loaded_from = path
                return

    def load_file(self, path):
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Config file not found: {path}")
        self.locations = [path]
        self.reload()

    def get(self, section, option, fallback=None):
        try:
            return self.config.get(section, option, fallback=fallback)
        except (configparser.NoSectionError, configparser.NoOptionError):
            return fallback

    def getboolean(self, section, option, fallback=False):
        try:
            return self.config.getboolean(section, option, fallback=fallback)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return fallback

    def getint(self, section, option, fallback=0):
        try:
            return self.config.getint(section, option, fallback=fallback)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return fallback

    def getfloat(self, section, option, fallback=0.0):
        try:
            return self.config.getfloat(section, option, fallback=fallback)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return fallback

    def getlist(self, section, option, fallback=None, delimiter=","):
        raw = self.get(section, option, fallback="")
        if raw:
            return [item.strip() for item in raw.split(delimiter) if item.strip()]
        return fallback or []

    def getpath(self, section, option, fallback=None):
        raw = self.get(section, option, fallback=fallback)
        if not raw:
            return fallback
        return os.path.abspath(os.path.expanduser(raw))

    def set(self, section, option, value):
        if not self.config.has_section(section):
            self.config.add_section(section)
        self.config.set(section, option, str(value))

    def taps(self):
        """Return [(namespace, directory)] in search order."""
        if self.config.has_section("taps") and self.config.items("taps"):
            return [(ns, os.path.abspath(os.path.expanduser(path)))
                    for ns, path in self.config.items("taps")]
        return [("core", self.getpath("paths", "formula_dir"))]

    def __getitem__(self, section):
        if section in self.config:
            return dict(self.config[section])
        raise KeyError(f"Section '{section}' not found.")

    def __contains__(self, section):
        return section in self.config


# Default global instance shared by the other modules
config = CellarConfig()

# Stdlib imports
import pathlib
import re

# Vendor imports
import pydantic
import yaml

# Local imports
from . import helper, model

CURRENT_CONFIG_VERSION = 1

# Default configuration file path for a system-wide backup job
default_config_path = pathlib.Path("/etc/nightshift/backup.yaml")

_default_config_contents = (
    f"""
v: {CURRENT_CONFIG_VERSION}

# Directory holding the archives and the log file
destination: /backup

# Absolute paths to include in every archive. Missing paths are skipped with a warning.
sources:
  - /etc
  - /home
  - /var/www

# Non-privileged account that is given ownership of the archives
owner: backup

# Archives older than this are deleted after each successful run (s, m, h, d or w)
retention: 7d
""".strip()
    + "\n"
)


class ConfigError(Exception):
    pass


# File modes are written the way chmod takes them, so 644 and 0644 both mean rw-r--r--
MODE_FIELDS = ("directory_mode", "archive_mode")


class _ConfigLoader(yaml.SafeLoader):
    pass


def _construct_int(loader: yaml.SafeLoader, node: yaml.ScalarNode):
    # Keep YAML 1.1 octal literals (0644) as written instead of converting them
    text = loader.construct_scalar(node)
    if re.fullmatch(r"0[0-7_]+", text):
        return text
    return loader.construct_yaml_int(node)


_ConfigLoader.add_constructor("tag:yaml.org,2002:int", _construct_int)


# Return the config values in the config file
def load_config_values(
    config_path: pathlib.Path,
) -> model.BackupConfiguration:
    # Resolve the path string to a path object
    config_path = config_path.expanduser()

    # If the config file doesn't already exist, create it
    if not config_path.exists():
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with config_path.open("w") as handle:
            handle.write(_default_config_contents)

    # Open and decode the config file
    with config_path.open("r") as handle:
        parsed = yaml.load(handle, _ConfigLoader) or {}

    if not isinstance(parsed, dict):
        raise ConfigError(f'Config file "{config_path}" must contain a mapping')

    for key in MODE_FIELDS:
        if isinstance(parsed.get(key), int) and not isinstance(parsed[key], bool):
            parsed[key] = str(parsed[key])

    try:
        instance = model.BackupConfiguration(**parsed)
        helper.parse_duration(instance.retention)
    except (pydantic.ValidationError, ValueError) as err:
        raise ConfigError(f'Config file "{config_path}" is invalid:\n{err}') from err

    if instance.v is not None and instance.v < CURRENT_CONFIG_VERSION:
        helper.print_warning(
            f'Warning: Config file located at "{config_path}" is possibly incompatible with the version of the backup tool you are using. Validate that the contents of the config file are compatible and update the "v" property to "v: {CURRENT_CONFIG_VERSION}", or delete the "v" property entirely to suppress this warning in the future.'
        )

    # Finally, return the values
    return instance

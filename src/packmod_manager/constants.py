BACKUP_SUFFIX = ".orig"
REMOVE_FILE_SUFFIX = "-remove"

STATE_FILE_NAME = "state.json"
LEGACY_STATE_FILE_NAME = "installed.json"

ENABLED_SUBDIR = "Enabled"
DISABLED_SUBDIR = "Disabled"

# Content-type directories that mark the payload root inside a package
DEFAULT_DIRS_AT_ROOT = [
    "Cameras",
    "Characters",
    "Effects",
    "GUI",
    "Pakfiles",
    "Prelaunch",
    "Tracks",
    "UserData",
    "Vehicles",
]

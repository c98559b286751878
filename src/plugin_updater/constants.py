"""Compiled-in trust anchors and fixed locations for the updater.

Nothing in this module is read from the environment: the fingerprint
allowlist, the publisher key location and the approved tool directories
are the updater's root of trust.
"""

from plugin_updater.models import MirrorCandidate

# Full-length OpenPGP fingerprints of the publisher's primary keys.
TRUSTED_FINGERPRINTS = frozenset(
    {
        "B6115AF3D271D12AB85E843E45DACC0ECFE90852",  # AltureT <myalture@gmail.com>
    }
)

# Publisher key shipped inside the checkout, relative to the plugin root
PUBLISHER_KEY_PATH = "assets/trusted-keys/publisher.asc"

MANIFEST_FILENAME = "package.json"
LOCKFILE_FILENAME = "package-lock.json"
DEPENDENCY_DIR = "node_modules"

# Mirrors in base order; the first entry is the last-resort default
MIRRORS: tuple[MirrorCandidate, ...] = (
    MirrorCandidate(
        name="Gitee",
        url="https://gitee.com/alture/hydro-ai-helper.git",
        probe_url="https://gitee.com/alture/hydro-ai-helper",
        region="cn",
    ),
    MirrorCandidate(
        name="GitHub",
        url="https://github.com/AltureT/hydro-ai-helper.git",
        probe_url="https://github.com/AltureT/hydro-ai-helper",
        region="global",
    ),
)

# Reference endpoints used to classify the network region
REGION_PROBES: dict[str, str] = {
    "cn": "https://www.baidu.com",
    "global": "https://www.google.com",
}

# Directories probed (in order) when resolving an external tool
SAFE_COMMAND_DIRS: tuple[str, ...] = ("/usr/bin", "/usr/local/bin", "/bin")

# Search path handed to every child process
CHILD_SEARCH_PATH: tuple[str, ...] = ("/usr/bin", "/usr/local/bin", "/bin")

# Parent environment variables a child may inherit
INHERITED_ENV_VARS: tuple[str, ...] = (
    "HOME",
    "USER",
    "LOGNAME",
    "TMPDIR",
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "NO_PROXY",
    "http_proxy",
    "https_proxy",
    "no_proxy",
)

# Variables that can redirect git to another repository, work tree or config
GIT_REDIRECT_ENV_VARS: frozenset[str] = frozenset(
    {
        "GIT_DIR",
        "GIT_WORK_TREE",
        "GIT_INDEX_FILE",
        "GIT_OBJECT_DIRECTORY",
        "GIT_ALTERNATE_OBJECT_DIRECTORIES",
        "GIT_COMMON_DIR",
        "GIT_NAMESPACE",
        "GIT_CEILING_DIRECTORIES",
        "GIT_DISCOVERY_ACROSS_FILESYSTEM",
        "GIT_CONFIG",
        "GIT_CONFIG_GLOBAL",
        "GIT_CONFIG_SYSTEM",
        "GIT_CONFIG_NOSYSTEM",
        "GIT_CONFIG_COUNT",
        "GIT_CONFIG_PARAMETERS",
        "GIT_EXEC_PATH",
        "GIT_TEMPLATE_DIR",
        "GIT_SSH",
        "GIT_SSH_COMMAND",
        "GIT_ASKPASS",
        "GIT_EXTERNAL_DIFF",
        "GIT_PAGER",
        "GIT_EDITOR",
    }
)

# Exit code reported for a command killed by its timeout
TIMEOUT_EXIT_CODE = 124

# Exit code reported when the executable could not be started
NOT_FOUND_EXIT_CODE = 127

GIT_INSTALL_GUIDES: dict[str, str] = {
    "linux": (
        "Install git with the system package manager:\n"
        "  - Debian/Ubuntu: sudo apt-get install git\n"
        "  - CentOS/RHEL: sudo yum install git\n"
        "  - Fedora: sudo dnf install git\n"
        "  - Arch: sudo pacman -S git\n"
        "  - Alpine: sudo apk add git"
    ),
    "darwin": (
        "Install git manually:\n"
        "  - Installer: https://git-scm.com/download/mac\n"
        "  - Homebrew: brew install git\n"
        "  - Xcode Command Line Tools: xcode-select --install"
    ),
    "win32": (
        "Install git manually:\n"
        "  - Installer: https://git-scm.com/download/win\n"
        "  - winget install Git.Git"
    ),
}

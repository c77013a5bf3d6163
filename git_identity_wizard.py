#!/usr/bin/env python3
"""
Git Identity Wizard: one Git identity per working directory

A terminal wizard that walks through:
  1. Creating (or reusing) a working directory
  2. Generating a dedicated SSH key for it
  3. Writing a directory-scoped .gitconfig that uses that key
  4. Registering an includeIf in ~/.gitconfig so Git picks it up by location

Usage:
    git-identity-wizard
    git-identity-wizard --directory work --name alice --email alice@corp.com
    git-identity-wizard version
"""

import argparse
import logging
import os
import platform
import shutil
import subprocess
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dulwich.config import ConfigFile
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm, Prompt

console = Console()
err_console = Console(stderr=True)
logger = logging.getLogger(__name__)


# ─── Constants ───────────────────────────────────────────────────────────────
APP_NAME    = "git-identity-wizard"
APP_VERSION = "0.1.0"

KEY_TYPES        = ("ed25519", "rsa")
DEFAULT_KEY_TYPE = "ed25519"
RSA_KEY_BITS     = 4096

DIR_MODE         = 0o755
SSH_DIR_MODE     = 0o700
PRIVATE_KEY_MODE = 0o600

INVALID_DIR_CHARS = '/\\:*?"<>|'
SUMMARY_WIDTH     = 80


def ssh_dir(home=None):
    return Path(home or Path.home()) / ".ssh"


def global_gitconfig_path(home=None):
    return Path(home or Path.home()) / ".gitconfig"


# ─── Errors ──────────────────────────────────────────────────────────────────
class WizardError(Exception):
    """Base class for failures the wizard reports to the user."""


class SetupError(WizardError):
    """A setup step failed. The message is shown to the user as-is."""


class ClipboardError(WizardError):
    """Copying the public key failed. Reported in the summary, never raised."""


# ─── Data ────────────────────────────────────────────────────────────────────
@dataclass
class FormData:
    directory_name: str = ""
    key_type: str = DEFAULT_KEY_TYPE
    git_username: str = ""
    git_email: str = ""
    sign_commits: bool = False


@dataclass
class SetupResult:
    """Everything the setup pipeline produced, used to render the summary."""

    directory: Path
    directory_created: bool
    private_key: Path
    public_key: Path
    public_key_text: str
    local_config: Path
    global_config: Path
    include_added: bool
    sign_commits: bool
    clipboard_error: Optional[ClipboardError] = None


# ─── Logging ─────────────────────────────────────────────────────────────────
def configure_logging(verbosity):
    """
    Configure the root logger from a -v count.

    verbosity == 0 -> WARNING
    verbosity == 1 -> INFO
    verbosity >= 2 -> DEBUG
    """
    if verbosity <= 0:
        level = logging.WARNING
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


# ─── Output Helpers ──────────────────────────────────────────────────────────
def ok(msg):
    console.print(f"  [green]\u2713[/] {msg}")


def info(msg):
    console.print(f"  [cyan]\u203a[/] {msg}")


def warn(msg):
    console.print(f"  [yellow]![/] {msg}")


def fail(msg):
    console.print(f"  [red]\u2717[/] {msg}")


def dim(msg):
    console.print(f"  [dim]{msg}[/]")


def styled_path(path):
    return f"[italic]{escape(str(path))}[/]"


def cmd_exists(name):
    """Check if a command exists on PATH."""
    return shutil.which(name) is not None


# ═════════════════════════════════════════════════════════════════════════════
BANNER = r"""
   ___ _ _     ___    _         _   _ _
  / __(_) |_  |_ _|__| |___ _ _| |_(_) |_ _  _
 | (_ | |  _|  | |/ _` / -_) ' \  _| |  _| || |
  \___|_|\__| |___\__,_\___|_||_\__|_|\__|\_, |
                  Wizard                  |__/
"""


def welcome():
    console.print(Panel(
        f"[bold bright_cyan]{BANNER}[/]\n"
        "  [white]One SSH key and Git identity per directory[/]\n",
        box=box.DOUBLE, border_style="bright_blue", padding=(0, 2),
    ))
    dim("Repositories under the directory will use this identity automatically.")
    console.print()


def preflight():
    if not cmd_exists("ssh-keygen"):
        raise SetupError("ssh-keygen not found on PATH. Install OpenSSH and try again.")
    if not cmd_exists("git"):
        raise SetupError("git not found on PATH. Install Git and try again.")
    ok("[bold]Preflight complete[/]")


# ═════════════════════════════════════════════════════════════════════════════
#  Form
# ═════════════════════════════════════════════════════════════════════════════
def validate_directory_name(value):
    if not value:
        return "directory name cannot be empty"
    if value in (".", ".."):
        return "directory name cannot be '.' or '..'"
    if any(c in INVALID_DIR_CHARS for c in value):
        return "directory name contains invalid characters"
    return None


def validate_username(value):
    if not value:
        return "git username cannot be empty"
    return None


def validate_email(value):
    if not value or "@" not in value or "." not in value:
        return "please enter a valid email address"
    return None


def ask_text(title, description, validate):
    """Prompt until `validate` accepts the (stripped) answer."""
    while True:
        value = Prompt.ask(f"  [bold]{title}[/] [dim]({description})[/]").strip()
        error = validate(value)
        if error is None:
            return value
        fail(error)


def _prefilled(value, validate, flag):
    value = value.strip()
    error = validate(value)
    if error is not None:
        raise SetupError(f"{flag}: {error}")
    return value


def collect_form(directory=None, key_type=None, username=None, email=None,
                 sign_commits=None):
    """Gather the five form fields, prompting only for the ones not given."""
    data = FormData()

    if directory is not None:
        data.directory_name = _prefilled(directory, validate_directory_name, "--directory")
    else:
        data.directory_name = ask_text(
            "Directory Name",
            "to create or use, e.g. github-personal, work-project",
            validate_directory_name,
        )

    if key_type is not None:
        if key_type not in KEY_TYPES:
            raise SetupError(f"--key-type: must be one of {', '.join(KEY_TYPES)}")
        data.key_type = key_type
    else:
        data.key_type = Prompt.ask(
            f"  [bold]SSH Key Type[/] [dim]({DEFAULT_KEY_TYPE} recommended)[/]",
            choices=list(KEY_TYPES),
            default=DEFAULT_KEY_TYPE,
        )

    if username is not None:
        data.git_username = _prefilled(username, validate_username, "--name")
    else:
        data.git_username = ask_text(
            "Git Username", "for commits in this directory", validate_username,
        )

    if email is not None:
        data.git_email = _prefilled(email, validate_email, "--email")
    else:
        data.git_email = ask_text(
            "Git Email", "e.g. user@example.com", validate_email,
        )

    if sign_commits is not None:
        data.sign_commits = sign_commits
    else:
        data.sign_commits = Confirm.ask(
            "  [bold]Sign Commits?[/] "
            "[dim](sign with this SSH key, requires Git 2.34+)[/]",
            default=False,
        )

    console.print()
    return data


# ═════════════════════════════════════════════════════════════════════════════
#  Paths
# ═════════════════════════════════════════════════════════════════════════════
def to_posix_path(path, system=None):
    """
    Convert a Windows path like C:\\Users\\me to /c/Users/me, the form Git and
    OpenSSH expect inside config values. Other platforms pass through.
    """
    path = str(path)
    if (system or platform.system()) != "Windows":
        return path

    p = path.replace("\\", "/")
    if len(p) > 1 and p[1] == ":":
        p = "/" + p[0].lower() + p[2:]
    return p


def git_path(path):
    """Forward-slash form used for includeIf targets (keeps drive letters)."""
    return str(path).replace("\\", "/")


def include_condition(directory):
    return f"gitdir:{git_path(directory).rstrip('/')}/"


# ═════════════════════════════════════════════════════════════════════════════
#  Step 1: Directory
# ═════════════════════════════════════════════════════════════════════════════
def ensure_directory(directory_name, cwd=None):
    """Return (absolute path, created) for the target directory."""
    base = Path(cwd) if cwd is not None else Path.cwd()
    path = Path(os.path.abspath(base / directory_name))

    try:
        if path.exists():
            if not path.is_dir():
                raise SetupError(f"'{path}' already exists and is not a directory")
            logger.info("reusing existing directory %s", path)
            return path, False
        path.mkdir(mode=DIR_MODE, parents=True)
    except OSError as e:
        raise SetupError(f"failed to create directory '{path}': {e}") from e

    logger.info("created directory %s", path)
    return path, True


# ═════════════════════════════════════════════════════════════════════════════
#  Step 2: SSH key
# ═════════════════════════════════════════════════════════════════════════════
def ssh_keygen_command(key_type, private_key, comment):
    cmd = [
        "ssh-keygen",
        "-t", key_type,
        "-f", str(private_key),
        "-N", "",
        "-C", comment,
    ]
    if key_type == "rsa":
        cmd += ["-b", str(RSA_KEY_BITS)]
    return cmd


def generate_ssh_key(key_type, key_name, ssh_path=None):
    """
    Generate a passphrase-less key pair named `key_name` in ~/.ssh.

    Refuses to overwrite existing key files. Returns (private, public) paths.
    """
    ssh_path = Path(ssh_path) if ssh_path is not None else ssh_dir()
    try:
        ssh_path.mkdir(mode=SSH_DIR_MODE, parents=True, exist_ok=True)
    except OSError as e:
        raise SetupError(f"failed to create .ssh directory '{ssh_path}': {e}") from e

    safe_name = key_name.replace(os.sep, "_")
    if os.altsep:
        safe_name = safe_name.replace(os.altsep, "_")
    private_key = ssh_path / safe_name
    public_key = ssh_path / f"{safe_name}.pub"

    if private_key.exists():
        raise SetupError(
            f"SSH key file already exists: {private_key}. "
            "Please remove or rename it to generate a new one"
        )
    if public_key.exists():
        raise SetupError(
            f"SSH public key file already exists: {public_key}. "
            "Please remove or rename it to generate a new one"
        )

    cmd = ssh_keygen_command(key_type, private_key, safe_name)
    logger.debug("running %s", cmd)
    try:
        result = subprocess.run(
            cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True,
        )
    except OSError as e:
        raise SetupError(f"could not run ssh-keygen: {e}") from e

    if result.returncode != 0:
        output = (result.stdout or "").strip()
        raise SetupError(
            f"ssh-keygen failed with exit status {result.returncode} (output: {output})"
        )

    if platform.system() != "Windows":
        try:
            private_key.chmod(PRIVATE_KEY_MODE)
        except OSError as e:
            warn(f"Could not set private key permissions (chmod 600) on "
                 f"{styled_path(private_key)}: {escape(str(e))}")

    logger.info("generated %s key %s", key_type, private_key)
    return private_key, public_key


def read_public_key(public_key):
    try:
        return Path(public_key).read_text()
    except OSError as e:
        raise SetupError(f"failed to read public key '{public_key}': {e}") from e


# ─── Clipboard ───────────────────────────────────────────────────────────────
def clipboard_command(system=None):
    """Pick the clipboard utility for this platform, or None if there is none."""
    system = system or platform.system()
    if system == "Darwin":
        return ["pbcopy"]
    if system == "Windows":
        return ["clip"]

    candidates = []
    if os.environ.get("WAYLAND_DISPLAY"):
        candidates.append(["wl-copy"])
    candidates.append(["xclip", "-selection", "clipboard"])
    candidates.append(["xsel", "--clipboard", "--input"])
    for cmd in candidates:
        if cmd_exists(cmd[0]):
            return cmd
    return None


def copy_to_clipboard(text, system=None):
    """Best effort. Returns None on success, a ClipboardError otherwise."""
    cmd = clipboard_command(system)
    if cmd is None:
        return ClipboardError("no clipboard utility found (tried wl-copy, xclip, xsel)")

    # xclip/xsel fork and keep running, so their output must not be piped
    try:
        result = subprocess.run(
            cmd, input=text, text=True,
            stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
        )
    except OSError as e:
        return ClipboardError(f"{cmd[0]} could not be started: {e}")
    if result.returncode != 0:
        return ClipboardError(f"{cmd[0]} exited with status {result.returncode}")
    return None


# ═════════════════════════════════════════════════════════════════════════════
#  Step 3: Git config
# ═════════════════════════════════════════════════════════════════════════════
def load_gitconfig(path):
    """Parse a Git config file without following its include directives."""
    target = os.fspath(path)

    def opener(p):
        if os.fspath(p) != target:
            raise OSError(f"not following include of {p}")
        return open(p, "rb")

    return ConfigFile.from_path(target, file_opener=opener)


def git_config_set(config_path, key, value):
    """Set one value with `git config --file`, leaving the rest of the file as is."""
    cmd = ["git", "config", "--file", str(config_path), "--replace-all", key, value]
    logger.debug("running %s", cmd)
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise SetupError(f"could not run git: {e}") from e
    if result.returncode != 0:
        raise SetupError(
            f"failed to write {key} to '{config_path}': {(result.stderr or '').strip()}"
        )


def write_local_gitconfig(directory, data, private_key_path, public_key_path):
    """
    Write <directory>/.gitconfig from scratch. An existing file is replaced.

    Key paths are expected in POSIX form already (see to_posix_path).
    """
    settings = [
        ("user.name", data.git_username),
        ("user.email", data.git_email),
    ]
    if data.sign_commits:
        settings.append(("user.signingkey", public_key_path))
    settings.append(("core.sshCommand", f"ssh -i {private_key_path} -o IdentitiesOnly=yes"))
    if data.sign_commits:
        settings += [
            ("gpg.format", "ssh"),
            ("commit.gpgsign", "true"),
            ("tag.gpgsign", "true"),
        ]

    path = Path(directory) / ".gitconfig"
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        raise SetupError(f"failed to replace local .gitconfig '{path}': {e}") from e

    for key, value in settings:
        git_config_set(path, key, value)

    logger.info("wrote %s", path)
    return path


def update_global_gitconfig(directory, config_path=None):
    """
    Point an includeIf "gitdir:<directory>/" at <directory>/.gitconfig.

    Returns (config path, added). `added` is False when the exact directive
    was already there, in which case the file is left untouched. Otherwise
    only that one value is written; other settings and comments stay as they are.
    """
    config_path = Path(config_path) if config_path is not None else global_gitconfig_path()

    if not config_path.exists():
        info(f"Global .gitconfig not found at {styled_path(config_path)}, creating it.")
        try:
            config_path.touch()
        except OSError as e:
            raise SetupError(f"failed to create global .gitconfig '{config_path}': {e}") from e

    try:
        config = load_gitconfig(config_path)
    except (OSError, ValueError) as e:
        raise SetupError(f"failed to load global .gitconfig '{config_path}': {e}") from e

    condition = include_condition(directory)
    wanted = git_path(Path(directory) / ".gitconfig")

    try:
        current = config.get(("includeIf", condition), "path").decode(config.encoding)
    except KeyError:
        current = None

    if current == wanted:
        logger.info("include for %s already present in %s", directory, config_path)
        return config_path, False

    git_config_set(config_path, f"includeIf.{condition}.path", wanted)

    logger.info("added include for %s to %s", directory, config_path)
    return config_path, True


# ═════════════════════════════════════════════════════════════════════════════
#  Pipeline
# ═════════════════════════════════════════════════════════════════════════════
def run_setup(data, cwd=None, home=None):
    """Run every side effect in order. Earlier steps are not undone on failure."""
    directory, created = ensure_directory(data.directory_name, cwd)

    key_name = f"{data.directory_name}-{uuid.uuid4()}"
    private_key, public_key = generate_ssh_key(data.key_type, key_name, ssh_dir(home))

    public_key_text = read_public_key(public_key)
    clipboard_error = copy_to_clipboard(public_key_text)
    if clipboard_error is not None:
        logger.info("clipboard copy failed: %s", clipboard_error)

    local_config = write_local_gitconfig(
        directory, data, to_posix_path(private_key), to_posix_path(public_key),
    )
    global_config, include_added = update_global_gitconfig(
        directory, global_gitconfig_path(home),
    )

    return SetupResult(
        directory=directory,
        directory_created=created,
        private_key=private_key,
        public_key=public_key,
        public_key_text=public_key_text,
        local_config=local_config,
        global_config=global_config,
        include_added=include_added,
        sign_commits=data.sign_commits,
        clipboard_error=clipboard_error,
    )


# ═════════════════════════════════════════════════════════════════════════════
#  Summary
# ═════════════════════════════════════════════════════════════════════════════
def build_summary(result):
    lines = []

    if result.directory_created:
        lines.append(f"[cyan]Created directory:[/] {styled_path(result.directory)}")
    else:
        lines.append(f"[cyan]Directory already exists:[/] {styled_path(result.directory)}")
    lines.append(f"[bright_cyan]Generated SSH key:[/] {styled_path(result.private_key)}")
    lines.append(
        f"[yellow]Created/Updated local .gitconfig:[/] {styled_path(result.local_config)}"
    )
    if result.include_added:
        lines.append(
            f"[yellow]Updated global .gitconfig:[/] {styled_path(result.global_config)}"
        )
    else:
        lines.append(
            f"[yellow]Global .gitconfig already includes this directory:[/] "
            f"{styled_path(result.global_config)}"
        )

    lines += [
        "",
        "[bold green]Setup completed successfully![/]",
        "",
        "[bright_cyan]Your SSH Public Key:[/]",
        f"[white]{escape(result.public_key_text.strip())}[/]",
    ]

    copied = result.clipboard_error is None
    if copied:
        lines += ["", "[green]Public key copied to clipboard[/]"]
    else:
        lines.append(
            f"[yellow]Could not copy public key to clipboard: "
            f"{escape(str(result.clipboard_error))}[/]"
        )

    if result.sign_commits:
        usage = "as both an Authentication key AND a Signing key"
    else:
        usage = "as an Authentication key"
    prefix = "Please add the copied key" if copied else "Please add this key"

    lines += [
        "",
        f"[yellow]{prefix} to your Git provider (GitHub, GitLab, etc.) {usage}.[/]",
        "[yellow]Find this under SSH and GPG keys (or similar) in your account settings.[/]",
    ]
    return lines


def print_summary(lines):
    console.print()
    console.print(Panel(
        "\n".join(lines),
        box=box.ROUNDED,
        border_style="green",
        padding=(1, 2),
        width=SUMMARY_WIDTH,
    ))
    console.print()


# ═════════════════════════════════════════════════════════════════════════════
#  Main
# ═════════════════════════════════════════════════════════════════════════════
def build_arg_parser():
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description=(
            "Create a directory with its own SSH key and Git identity, and "
            "register it in ~/.gitconfig with includeIf."
        ),
    )
    parser.add_argument(
        "command", nargs="?", choices=["setup", "version"], default="setup",
        help="'setup' (default) runs the wizard, 'version' prints the version.",
    )
    parser.add_argument(
        "--version", action="version", version=f"{APP_NAME} version {APP_VERSION}",
    )
    parser.add_argument("--directory", help="Directory to create or use.")
    parser.add_argument("--key-type", choices=KEY_TYPES, help="SSH key type.")
    parser.add_argument("--name", help="Git user.name for the directory.")
    parser.add_argument("--email", help="Git user.email for the directory.")
    parser.add_argument(
        "--sign", dest="sign_commits", action="store_true",
        help="Sign commits and tags with the new SSH key.",
    )
    parser.add_argument(
        "--no-sign", dest="sign_commits", action="store_false",
        help="Do not sign commits.",
    )
    parser.set_defaults(sign_commits=None)
    parser.add_argument(
        "-v", "--verbose", action="count", default=0,
        help="Increase log verbosity (can be given twice).",
    )
    return parser


def main(argv=None):
    args = build_arg_parser().parse_args(argv)

    if args.command == "version":
        console.print(f"{APP_NAME} version {APP_VERSION}")
        return 0

    configure_logging(args.verbose)

    try:
        welcome()
        preflight()

        data = collect_form(
            directory=args.directory,
            key_type=args.key_type,
            username=args.name,
            email=args.email,
            sign_commits=args.sign_commits,
        )

        result = run_setup(data)

        print_summary(build_summary(result))

    except (KeyboardInterrupt, EOFError):
        console.print("\n\n  [dim]Cancelled. Run again whenever you're ready.[/]\n")
        sys.exit(130)
    except SetupError as e:
        err_console.print(f"[bold red]Error:[/] {escape(str(e))}")
        sys.exit(1)
    except Exception as e:
        console.print(f"\n  [red]Something broke: {escape(str(e))}[/]")
        raise

    return 0


if __name__ == "__main__":
    sys.exit(main())

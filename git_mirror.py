#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "rich>=13.7.0",
#     "typer>=0.12.3"
# ]
# ///

"""CLI for mirroring one git repository into another from a CI job."""

import os
import re
import shlex
import shutil
import signal
import subprocess
import sys
import tempfile
import threading
import urllib.parse
import uuid
from collections.abc import Callable, Sequence
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import ClassVar, Protocol, TextIO

import typer
from rich.console import Console
from rich.markup import escape

console = Console(highlight=False)
app = typer.Typer(add_completion=False, rich_markup_mode="rich")

DEFAULT_HOST = "github.com"
MIRROR_REMOTE = "mirror"
TOKEN_USERNAME = "x-access-token"
CREDENTIAL_CACHE_TIMEOUT = 6 * 60 * 60

REPO_PATTERN = re.compile(r"^(?:(?P<owner>[A-Za-z0-9_.-]+)/)?(?P<name>[A-Za-z0-9_.-]+)$")
PRIVATE_KEY_PATTERN = re.compile(r"^-----BEGIN (?:RSA |DSA |EC |OPENSSH )?PRIVATE KEY-----")
TOKEN_PATTERN = re.compile(r"^(?:[A-Za-z0-9_-]{40}|github_pat_[A-Za-z0-9_]{82})$")
SSH_AGENT_PATTERN = re.compile(
    r"SSH_AUTH_SOCK=(?P<SSH_AUTH_SOCK>[^;]+).*SSH_AGENT_PID=(?P<SSH_AGENT_PID>\d+)",
    re.DOTALL,
)
SSH_SOURCE_PATTERN = re.compile(r"^(?:ssh://)?(?:[^@/\s]+@)?(?P<host>[^:/\s]+)[:/]")

INPUT_ENV = {
    "source_repo": "INPUT_SOURCE-REPO",
    "target_repo": "INPUT_TARGET-REPO",
    "target_ssh_key": "INPUT_TARGET-SSH-KEY",
    "target_token": "INPUT_TARGET-TOKEN",
    "source_ssh_key": "INPUT_SOURCE-SSH-KEY",
}
SECRET_INPUTS = ("target_ssh_key", "target_token", "source_ssh_key")

OUTPUT_SOURCE_REPO = "source-repo"
OUTPUT_TARGET_REPO = "target-repo"
OUTPUT_HEAD_COMMIT = "head-commit-hash"


class MirrorError(Exception):
    """Base class for every failure that aborts a mirror run."""


class ConfigurationError(MirrorError):
    """Raised when inputs are missing, conflicting or malformed."""


class InvalidRepoFormat(ConfigurationError):
    """Raised when a repository reference is not ``owner/name`` or ``name``."""


class InvalidSecretFormat(ConfigurationError):
    """Raised when a key or token does not have the expected shape."""


class CredentialSetupFailure(MirrorError):
    """Raised when secret material cannot be installed."""


class TeardownFailure(MirrorError):
    """Raised when cleanup fails after an otherwise successful run."""

    def __init__(self, failures: list[tuple[str, BaseException]]) -> None:
        self.failures = failures
        steps = ", ".join(step for step, _ in failures)
        super().__init__(f"Teardown failed: {steps}")


class CommandFailure(MirrorError):
    """An external command exited with a non-zero status."""

    def __init__(self, command: Sequence[str], exit_code: int, stdout: str = "", stderr: str = "") -> None:
        self.command = list(command)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"Command `{shlex.join(self.command)}` failed with exit code {exit_code}")


class Phase(Enum):
    """States of a mirror run, in the order they are entered."""

    VALIDATING = "validating"
    PROVIDER_SELECTED = "provider selected"
    GLOBAL_CREDENTIALS_INSTALLED = "global credentials installed"
    SOURCE_CLONED = "source cloned"
    LOCAL_CREDENTIALS_WIRED = "local credentials wired"
    PUSHED = "pushed"
    METADATA_CAPTURED = "metadata captured"
    LOCAL_TORNDOWN = "local credentials removed"
    GLOBAL_TORNDOWN = "global credentials removed"
    SESSION_REMOVED = "session removed"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_STREAM_LOCKS: dict[int, threading.Lock] = {}
_STREAM_LOCKS_GUARD = threading.Lock()


def _stream_lock(stream: TextIO) -> threading.Lock:
    """Return the lock serialising writes to ``stream``."""
    with _STREAM_LOCKS_GUARD:
        return _STREAM_LOCKS.setdefault(id(stream), threading.Lock())


def _log(message: str) -> None:
    with _stream_lock(console.file):
        console.log(message)


def _format_command(command: Sequence[str]) -> str:
    return " ".join(f"[dim]`[/]{escape(arg)}[dim]`[/]" for arg in command)


def _pump(pipe: TextIO, stream: TextIO, sink: list[str]) -> None:
    """Copy ``pipe`` line by line into ``stream`` while collecting it."""
    for line in iter(pipe.readline, ""):
        sink.append(line)
        with _stream_lock(stream):
            stream.write(line)
            stream.flush()
    pipe.close()


def _run_streaming(command: list[str], cwd: Path | None, input_text: str | None) -> tuple[int, str, str]:
    """Run ``command`` echoing its output live; return exit code and output."""
    stdout_lines: list[str] = []
    stderr_lines: list[str] = []
    proc = subprocess.Popen(  # noqa: S603  # explicit argument vector, no shell
        command,
        cwd=str(cwd) if cwd else None,
        stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    try:
        readers = [
            threading.Thread(target=_pump, args=(proc.stdout, sys.stdout, stdout_lines), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, sys.stderr, stderr_lines), daemon=True),
        ]
        for reader in readers:
            reader.start()
        if input_text is not None and proc.stdin is not None:
            try:
                proc.stdin.write(input_text)
            except BrokenPipeError:
                pass  # the child exited early; its status reports why
            finally:
                proc.stdin.close()
        returncode = proc.wait()
        for reader in readers:
            reader.join()
    except BaseException:
        proc.kill()
        proc.wait()
        raise
    return returncode, "".join(stdout_lines), "".join(stderr_lines)


def _run_command(
    command: str,
    args: Sequence[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    stream: bool = False,
) -> str:
    """Execute ``command`` and return its stdout, raising ``CommandFailure`` on error.

    ``input_text`` is delivered on stdin so secrets never reach the argument
    vector or the environment. With ``stream`` the child's output is echoed
    to this process's stdout/stderr as it arrives.
    """
    argv = [command, *args]
    _log(f"[magenta]Executing command:[/] {_format_command(argv)}")
    try:
        if stream:
            returncode, stdout, stderr = _run_streaming(argv, cwd, input_text)
        else:
            proc = subprocess.run(  # noqa: S603  # explicit argument vector, no shell
                argv,
                cwd=str(cwd) if cwd else None,
                input=input_text,
                capture_output=True,
                text=True,
                check=False,
            )
            returncode, stdout, stderr = proc.returncode, proc.stdout, proc.stderr
    except FileNotFoundError as exc:
        raise CommandFailure(argv, 127, "", str(exc)) from exc
    if returncode != 0:
        raise CommandFailure(argv, returncode, stdout, stderr)
    return stdout


@dataclass(frozen=True)
class RepoIdentifier:
    """A validated ``owner/name`` pair."""

    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def slug(self) -> str:
        """Short filesystem-safe label used to name per-run state."""
        return f"{self.owner}-{self.name}"[:40]

    def __str__(self) -> str:
        return self.full_name


def parse_repo(raw: str, default_owner: str | None) -> RepoIdentifier:
    """Normalise ``owner/name`` or ``name`` into a ``RepoIdentifier``."""
    text = raw.strip()
    match = REPO_PATTERN.match(text)
    if not match:
        message = f"Invalid repository reference {text!r}: expected `owner/name` or `name`"
        raise InvalidRepoFormat(message)
    owner = match.group("owner") or default_owner
    if not owner:
        message = f"Repository {text!r} has no owner and no default owner is available"
        raise InvalidRepoFormat(message)
    if not REPO_PATTERN.match(owner) or "/" in owner:
        message = f"Invalid default owner {owner!r}"
        raise InvalidRepoFormat(message)
    name = match.group("name")
    if name in {".", ".."} or owner in {".", ".."}:
        message = f"Invalid repository reference {text!r}"
        raise InvalidRepoFormat(message)
    return RepoIdentifier(owner=owner, name=name)


def _default_owner() -> str | None:
    """Return the owner of the repository running the current CI job."""
    owner = os.environ.get("GITHUB_REPOSITORY_OWNER")
    if owner:
        return owner
    repository = os.environ.get("GITHUB_REPOSITORY", "")
    return repository.split("/", 1)[0] or None


def _default_host() -> str:
    server_url = os.environ.get("GITHUB_SERVER_URL")
    if server_url:
        netloc = urllib.parse.urlparse(server_url).netloc
        if netloc:
            return netloc
    return DEFAULT_HOST


def _ssh_host(reference: str) -> str | None:
    """Return the host of an SSH-style remote reference, if it is one."""
    if "://" in reference and not reference.startswith("ssh://"):
        return None
    match = SSH_SOURCE_PATTERN.match(reference)
    if not match or ("@" not in reference and not reference.startswith("ssh://")):
        return None
    return match.group("host")


def _make_state_dir(repo: RepoIdentifier, kind: str) -> Path:
    """Create an owner-only directory unique to this run."""
    path = Path(tempfile.mkdtemp(prefix=f"git-mirror-{kind}-{repo.slug}-"))
    path.chmod(0o700)
    return path


def _remove_tree(path: Path) -> None:
    shutil.rmtree(path)


def _write_private(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` readable by the owner only."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as handle:
        handle.write(content)


@dataclass
class MirrorInputs:
    """Typed configuration for one run, populated once at startup."""

    source_repo: str | None = None
    target_repo: str | None = None
    target_ssh_key: str | None = field(default=None, repr=False)
    target_token: str | None = field(default=None, repr=False)
    source_ssh_key: str | None = field(default=None, repr=False)
    host: str = DEFAULT_HOST
    default_owner: str | None = None
    strict_host_keys: bool = False

    def __post_init__(self) -> None:
        for name in INPUT_ENV:
            value = getattr(self, name)
            if value is not None and not value.strip():
                setattr(self, name, None)

    def validate(self) -> None:
        """Check presence and exclusivity of inputs without touching anything external."""
        missing = [INPUT_ENV[name] for name in ("source_repo", "target_repo") if not getattr(self, name)]
        if missing:
            present = sorted(name for name in os.environ if name.startswith("INPUT_"))
            message = f"Missing required input(s): {', '.join(missing)}"
            if present:
                message += f" (inputs present: {', '.join(present)})"
            raise ConfigurationError(message)
        if self.target_ssh_key and self.target_token:
            message = "Only one of the target SSH key or the target token may be provided, not both"
            raise ConfigurationError(message)
        if not self.target_ssh_key and not self.target_token:
            message = "Either the target SSH key or the target token must be provided"
            raise ConfigurationError(message)

    def take(self, name: str) -> str | None:
        """Return a secret input and clear it from this object and the environment."""
        value = getattr(self, name)
        setattr(self, name, None)
        os.environ.pop(INPUT_ENV[name], None)
        return value

    def normalized_source(self) -> str:
        """Return the clone URL, expanding the ``owner/name`` shorthand."""
        source = (self.source_repo or "").strip()
        match = REPO_PATTERN.match(source)
        if match and match.group("owner"):
            repo = parse_repo(source, None)
            if self.source_ssh_key:
                return f"git@{self.host}:{repo.full_name}.git"
            return f"https://{self.host}/{repo.full_name}.git"
        return source


class SshSession:
    """An ssh-agent plus a per-run SSH client configuration."""

    def __init__(self, repo: RepoIdentifier, hosts: Sequence[str], *, strict_host_keys: bool = False) -> None:
        self.repo = repo
        self.hosts = list(dict.fromkeys(hosts))
        self.strict_host_keys = strict_host_keys
        self.agent_pid: str | None = None
        self.state_dir: Path | None = None
        self._saved_env: dict[str, str | None] = {}

    @property
    def started(self) -> bool:
        return self.agent_pid is not None

    def start(self) -> None:
        """Start the agent and install the client config; reuse them if running."""
        if self.started:
            return
        try:
            output = _run_command("ssh-agent", ["-s"])
        except CommandFailure as exc:
            raise CredentialSetupFailure("Failed to start SSH agent") from exc
        match = SSH_AGENT_PATTERN.search(output)
        if not match:
            raise CredentialSetupFailure("Failed to start SSH agent: no socket or PID in its output")
        self.agent_pid = match.group("SSH_AGENT_PID")
        self._export("SSH_AUTH_SOCK", match.group("SSH_AUTH_SOCK"))
        self._export("SSH_AGENT_PID", self.agent_pid)
        self.state_dir = _make_state_dir(self.repo, "ssh")
        config_path = self._write_client_config(self.state_dir)
        self._export("GIT_SSH_COMMAND", f"ssh -F {shlex.quote(str(config_path))}")

    def add_key(self, key: str, label: str) -> None:
        _log(f"[yellow]Adding {label} SSH key...[/]")
        if not key.endswith("\n"):
            key += "\n"
        try:
            _run_command("ssh-add", ["-"], input_text=key)
        except CommandFailure as exc:
            message = f"Failed to add {label} SSH key to the agent"
            raise CredentialSetupFailure(message) from exc

    def stop(self) -> None:
        """Kill the agent, restore the environment and drop per-run files."""
        if self.agent_pid is not None:
            _log("[blue]Stopping SSH agent...[/]")
            try:
                _run_command("ssh-agent", ["-k"])
            except CommandFailure as exc:
                _log(f"[yellow]SSH agent {self.agent_pid} was not running: {escape(exc.stderr.strip())}[/]")
            self.agent_pid = None
        for name, value in self._saved_env.items():
            if value is None:
                os.environ.pop(name, None)
            else:
                os.environ[name] = value
        self._saved_env.clear()
        if self.state_dir is not None:
            _remove_tree(self.state_dir)
            self.state_dir = None

    def _export(self, name: str, value: str) -> None:
        self._saved_env.setdefault(name, os.environ.get(name))
        os.environ[name] = value

    def _write_client_config(self, state_dir: Path) -> Path:
        lines: list[str] = []
        if self.strict_host_keys:
            known_hosts = state_dir / "known_hosts"
            try:
                scanned = _run_command("ssh-keyscan", ["-H", *self.hosts])
            except CommandFailure as exc:
                raise CredentialSetupFailure("Failed to scan SSH host keys") from exc
            _write_private(known_hosts, scanned)
            lines += [
                "StrictHostKeyChecking yes",
                f"UserKnownHostsFile {known_hosts} ~/.ssh/known_hosts",
            ]
        else:
            lines.append("StrictHostKeyChecking no")
        lines.append("Include ~/.ssh/config")
        config_path = state_dir / "config"
        _write_private(config_path, "\n".join(lines) + "\n")
        return config_path


class CredentialProvider(Protocol):
    """Capabilities every authentication mechanism provides."""

    kind: ClassVar[str]
    repo: RepoIdentifier
    host: str

    @property
    def remote_url(self) -> str: ...

    def setup_global(self) -> None: ...

    def setup_local(self, repo_path: Path) -> None: ...

    def teardown_local(self, repo_path: Path) -> None: ...

    def teardown_global(self) -> None: ...


@dataclass
class SshCredentials:
    """Push over SSH with a private key loaded into an ssh-agent."""

    kind: ClassVar[str] = "ssh"

    repo: RepoIdentifier
    secret: str | None = field(repr=False)
    host: str = DEFAULT_HOST
    extra_hosts: Sequence[str] = ()
    strict_host_keys: bool = False
    session: SshSession = field(init=False, repr=False)
    _remote_added: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.validate_secret(self.secret or ""):
            message = "The target SSH key is not a recognised private key"
            raise InvalidSecretFormat(message)
        self.session = SshSession(
            self.repo,
            [self.host, *self.extra_hosts],
            strict_host_keys=self.strict_host_keys,
        )

    @staticmethod
    def validate_secret(secret: str) -> bool:
        return bool(PRIVATE_KEY_PATTERN.match(secret.lstrip()))

    @property
    def remote_url(self) -> str:
        return f"git@{self.host}:{self.repo.full_name}.git"

    def setup_global(self) -> None:
        if self.secret is None:
            raise CredentialSetupFailure("The target SSH key has already been consumed")
        _log("[blue]Setting up SSH agent...[/]")
        self.session.start()
        self.session.add_key(self.secret, "target")
        self.secret = None

    def setup_local(self, repo_path: Path) -> None:
        _run_command("git", ["remote", "add", MIRROR_REMOTE, self.remote_url], cwd=repo_path)
        self._remote_added = True

    def teardown_local(self, repo_path: Path) -> None:
        if not self._remote_added:
            return
        _run_command("git", ["remote", "remove", MIRROR_REMOTE], cwd=repo_path)
        self._remote_added = False

    def teardown_global(self) -> None:
        self.secret = None
        self.session.stop()


@dataclass
class TokenCredentials:
    """Push over HTTPS with a token held in git's credential cache."""

    kind: ClassVar[str] = "token"

    repo: RepoIdentifier
    secret: str | None = field(repr=False)
    host: str = DEFAULT_HOST
    state_dir: Path | None = field(default=None, init=False)
    _helper_configured: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.validate_secret(self.secret or ""):
            message = "The target token is not a well-formed access token"
            raise InvalidSecretFormat(message)

    @staticmethod
    def validate_secret(secret: str) -> bool:
        return bool(TOKEN_PATTERN.match(secret))

    @property
    def remote_url(self) -> str:
        return f"https://{self.host}/{self.repo.full_name}.git"

    @property
    def socket_path(self) -> Path:
        if self.state_dir is None:
            raise CredentialSetupFailure("The git credential cache has not been set up")
        return self.state_dir / "socket"

    def setup_global(self) -> None:
        if self.secret is None:
            raise CredentialSetupFailure("The target token has already been consumed")
        _log("[blue]Storing token in the git credential cache...[/]")
        self.state_dir = _make_state_dir(self.repo, "cred")
        record = (
            "protocol=https\n"
            f"host={self.host}\n"
            f"path={self.repo.full_name}.git\n"
            f"username={TOKEN_USERNAME}\n"
            f"password={self.secret}\n"
            "\n"
        )
        try:
            _run_command(
                "git",
                [
                    "credential-cache",
                    f"--timeout={CREDENTIAL_CACHE_TIMEOUT}",
                    f"--socket={self.socket_path}",
                    "store",
                ],
                input_text=record,
            )
        except CommandFailure as exc:
            raise CredentialSetupFailure("Failed to store the token in the git credential cache") from exc
        self.secret = None

    def setup_local(self, repo_path: Path) -> None:
        helper = f"cache --socket={shlex.quote(str(self.socket_path))}"
        _run_command("git", ["config", "credential.helper", helper], cwd=repo_path)
        self._helper_configured = True
        _run_command("git", ["config", "credential.useHttpPath", "true"], cwd=repo_path)

    def teardown_local(self, repo_path: Path) -> None:
        if not self._helper_configured:
            return
        _run_command("git", ["config", "--unset-all", "credential.helper"], cwd=repo_path)
        self._helper_configured = False

    def teardown_global(self) -> None:
        self.secret = None
        if self.state_dir is None:
            return
        state_dir, socket = self.state_dir, self.socket_path
        try:
            if socket.exists():
                _log("[blue]Stopping git credential cache...[/]")
                _run_command("git", ["credential-cache", f"--socket={socket}", "exit"])
        finally:
            _remove_tree(state_dir)
            self.state_dir = None


def build_provider(inputs: MirrorInputs, source: str | None = None) -> SshCredentials | TokenCredentials:
    """Construct the one provider implied by which secret was supplied.

    The chosen secret is taken from ``inputs`` before anything else is
    checked, so a rejected run never leaves it behind.
    """
    if source is None:
        source = inputs.normalized_source()
    ssh_key = inputs.take("target_ssh_key")
    token = inputs.take("target_token")
    if inputs.target_repo is None:
        raise ConfigurationError(f"Missing required input: {INPUT_ENV['target_repo']}")
    repo = parse_repo(inputs.target_repo, inputs.default_owner)
    if ssh_key and token:
        raise ConfigurationError("Only one of the target SSH key or the target token may be provided, not both")
    if ssh_key:
        source_host = _ssh_host(source)
        return SshCredentials(
            repo=repo,
            secret=ssh_key,
            host=inputs.host,
            extra_hosts=[source_host] if source_host else [],
            strict_host_keys=inputs.strict_host_keys,
        )
    if token:
        return TokenCredentials(repo=repo, secret=token, host=inputs.host)
    raise ConfigurationError("Either the target SSH key or the target token must be provided")


class MirrorSession:
    """Owner-only temporary directory holding the bare mirror clone."""

    def __init__(self, repo: RepoIdentifier) -> None:
        self.repo = repo
        self.path: Path | None = None

    def open(self) -> Path:
        self.path = Path(tempfile.mkdtemp(prefix=f"git-mirror-{self.repo.slug}-"))
        self.path.chmod(0o700)
        return self.path

    def close(self) -> None:
        if self.path is None:
            return
        _remove_tree(self.path)
        self.path = None


@dataclass(frozen=True)
class RunOutputs:
    """Values reported back to the calling pipeline."""

    source_repo: str
    target_repo: str
    head_commit_hash: str


class GitHubOutput:
    """Write-once sink for step outputs."""

    def __init__(self, path: Path | None) -> None:
        self.path = path
        self.written: dict[str, str] = {}

    def set(self, name: str, value: str) -> None:
        if name in self.written:
            message = f"Output {name!r} has already been written"
            raise ValueError(message)
        if self.path is None:
            console.print(f"[bold]{name}[/]={escape(value)}")
        else:
            delimiter = f"ghadelimiter_{uuid.uuid4()}"
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(f"{name}<<{delimiter}\n{value}\n{delimiter}\n")
        self.written[name] = value

    def publish(self, outputs: RunOutputs) -> None:
        self.set(OUTPUT_SOURCE_REPO, outputs.source_repo)
        self.set(OUTPUT_TARGET_REPO, outputs.target_repo)
        self.set(OUTPUT_HEAD_COMMIT, outputs.head_commit_hash)


def _guarded(
    phase: Phase,
    step: Callable[[], None],
    failures: list[tuple[str, BaseException]],
) -> Callable[[], None]:
    """Wrap a teardown step so its failure is logged and collected, not raised."""

    def run() -> None:
        try:
            step()
        except Exception as exc:  # noqa: BLE001
            _log(f"[red]Teardown step '{phase.value}' failed: {escape(str(exc))}[/]")
            failures.append((phase.value, exc))
        else:
            _log(f"[dim]Phase: {phase.value}[/]")

    return run


def _source_ssh_session(provider: SshCredentials | TokenCredentials, source: str, inputs: MirrorInputs) -> SshSession:
    """Return the agent that should hold the source key, reusing the target's if any."""
    if isinstance(provider, SshCredentials):
        return provider.session
    return SshSession(
        provider.repo,
        [_ssh_host(source) or inputs.host],
        strict_host_keys=inputs.strict_host_keys,
    )


def run_mirror(inputs: MirrorInputs, outputs: GitHubOutput) -> RunOutputs:
    """Mirror ``inputs.source_repo`` into ``inputs.target_repo``.

    Teardown (local credentials, global credentials, session directory) runs
    on every exit path once the corresponding resource exists. A teardown
    failure fails an otherwise successful run but never hides the error that
    made a run fail.
    """
    phase = Phase.VALIDATING
    _log(f"[dim]Phase: {phase.value}[/]")
    try:
        inputs.validate()
        source = inputs.normalized_source()
        source_key = inputs.take("source_ssh_key")
        provider = build_provider(inputs, source)
    except ConfigurationError:
        for name in SECRET_INPUTS:
            inputs.take(name)
        raise
    phase = Phase.PROVIDER_SELECTED
    _log(f"[dim]Phase: {phase.value} ({provider.kind} -> {provider.repo})[/]")
    failures: list[tuple[str, BaseException]] = []
    try:
        with ExitStack() as stack:
            session = MirrorSession(provider.repo)
            stack.callback(_guarded(Phase.SESSION_REMOVED, session.close, failures))
            repo_path = session.open()
            stack.callback(_guarded(Phase.GLOBAL_TORNDOWN, provider.teardown_global, failures))
            source_ssh = _source_ssh_session(provider, source, inputs) if source_key else None
            if source_ssh is not None and not isinstance(provider, SshCredentials):
                stack.callback(_guarded(Phase.GLOBAL_TORNDOWN, source_ssh.stop, failures))
            stack.callback(_guarded(Phase.LOCAL_TORNDOWN, lambda: provider.teardown_local(repo_path), failures))

            provider.setup_global()
            if source_ssh is not None and source_key:
                source_ssh.start()
                source_ssh.add_key(source_key, "source")
                source_key = None
            phase = Phase.GLOBAL_CREDENTIALS_INSTALLED
            _log(f"[dim]Phase: {phase.value}[/]")

            _log("[cyan]Cloning source repository...[/]")
            _run_command("git", ["clone", "--mirror", "--no-progress", source, str(repo_path)], stream=True)
            phase = Phase.SOURCE_CLONED
            _log(f"[dim]Phase: {phase.value}[/]")

            provider.setup_local(repo_path)
            phase = Phase.LOCAL_CREDENTIALS_WIRED
            _log(f"[dim]Phase: {phase.value}[/]")

            _log("[cyan]Mirroring repository...[/]")
            _run_command("git", ["push", "--mirror", "--no-progress", provider.remote_url], cwd=repo_path, stream=True)
            phase = Phase.PUSHED
            _log(f"[dim]Phase: {phase.value}[/]")

            head = _run_command("git", ["rev-parse", "HEAD"], cwd=repo_path).strip()
            result = RunOutputs(source_repo=source, target_repo=provider.repo.full_name, head_commit_hash=head)
            outputs.publish(result)
            phase = Phase.METADATA_CAPTURED
            _log(f"[dim]Phase: {phase.value}[/]")
            _log("[cyan]Cleaning up...[/]")
    except BaseException:
        _log(f"[red]Phase: {Phase.FAILED.value} (last completed: {phase.value})[/]")
        for step, exc in failures:
            _log(f"[red]  also failed during teardown ({step}): {escape(str(exc))}[/]")
        raise
    if failures:
        raise TeardownFailure(failures)
    _log(f"[dim]Phase: {Phase.SUCCEEDED.value}[/]")
    return result


def _raise_on_sigterm(signum: int, _frame: object) -> None:
    message = f"Terminated by signal {signum}"
    raise MirrorError(message)


def _report_failure(error: MirrorError) -> None:
    console.print(f"[red]{escape(str(error))}[/]")
    if isinstance(error, CommandFailure) and error.stderr.strip():
        console.print(f"[red]stderr:[/] {escape(error.stderr.strip())}")
    cause = error.__cause__
    if isinstance(cause, CommandFailure):
        console.print(f"[red]caused by:[/] {escape(str(cause))}")
        if cause.stderr.strip():
            console.print(f"[red]stderr:[/] {escape(cause.stderr.strip())}")


@app.command(context_settings={"help_option_names": ["-h", "--help"]})
def main(  # noqa: PLR0913  # CLI entrypoint needs many options
    source_repo: str | None = typer.Option(
        None,
        "--source-repo",
        envvar=INPUT_ENV["source_repo"],
        help="Repository to clone (URL, SSH path or owner/name)",
    ),
    target_repo: str | None = typer.Option(
        None,
        "--target-repo",
        envvar=INPUT_ENV["target_repo"],
        help="Repository to push to (owner/repo or repo)",
    ),
    target_ssh_key: str | None = typer.Option(
        None,
        "--target-ssh-key",
        envvar=INPUT_ENV["target_ssh_key"],
        show_default=False,
        help="Private key for pushing over SSH (prefer the environment variable)",
    ),
    target_token: str | None = typer.Option(
        None,
        "--target-token",
        envvar=INPUT_ENV["target_token"],
        show_default=False,
        help="Access token for pushing over HTTPS (prefer the environment variable)",
    ),
    source_ssh_key: str | None = typer.Option(
        None,
        "--source-ssh-key",
        envvar=INPUT_ENV["source_ssh_key"],
        show_default=False,
        help="Private key for cloning a private source over SSH",
    ),
    host: str | None = typer.Option(
        None,
        "--github-host",
        envvar="INPUT_GITHUB-HOST",
        help="Host used to build remote URLs (default: from GITHUB_SERVER_URL or github.com)",
    ),
    strict_host_keys: bool = typer.Option(
        False,
        "--strict-host-keys",
        envvar="INPUT_STRICT-HOST-KEYS",
        help="Keep strict SSH host key checking and trust keys from ssh-keyscan",
    ),
    default_owner: str | None = typer.Option(
        None,
        "--default-owner",
        envvar="GITHUB_REPOSITORY_OWNER",
        help="Owner used when the target repository has no owner",
    ),
    github_output: Path | None = typer.Option(
        None,
        "--github-output",
        envvar="GITHUB_OUTPUT",
        help="File receiving step outputs (printed when unset)",
    ),
) -> None:
    """Mirror a source repository into a target repository."""
    inputs = MirrorInputs(
        source_repo=source_repo,
        target_repo=target_repo,
        target_ssh_key=target_ssh_key,
        target_token=target_token,
        source_ssh_key=source_ssh_key,
        host=host or _default_host(),
        default_owner=default_owner or _default_owner(),
        strict_host_keys=strict_host_keys,
    )
    del target_ssh_key, target_token, source_ssh_key
    previous_handler = signal.signal(signal.SIGTERM, _raise_on_sigterm)
    try:
        result = run_mirror(inputs, GitHubOutput(github_output))
    except MirrorError as error:
        _report_failure(error)
        raise typer.Exit(1)
    finally:
        signal.signal(signal.SIGTERM, previous_handler)
    console.print(f"[green]Mirrored {escape(result.source_repo)} to {result.target_repo} at {result.head_commit_hash}[/]")


if __name__ == "__main__":
    app()

"""Forge smart contract development toolchain integration.

- Clone source repositories at a pinned commit

- Install Node dependencies and compile with ``forge build``

- Index the produced ``forge-out`` artifacts by their source path

- See `Foundry book <https://book.getfoundry.sh/>`__ for more information.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from shutil import which
from subprocess import DEVNULL, PIPE

import psutil

from eth_governance.verification.manifest import RepoDescriptor, get_github_url


logger = logging.getLogger(__name__)


#: Crash unless a single clone/install/build step completes in 15 minutes
#:
DEFAULT_TIMEOUT = 15 * 60

#: Artifact directory configured in the source repositories' foundry.toml
FORGE_OUT_DIR = "forge-out"


class ForgeFailed(Exception):
    """Forge, git or yarn command failed."""


class ArtifactIndexError(Exception):
    """Two artifacts claim the same source file."""


def _exec_cmd(
    cmd_line: list[str],
    cwd: Path,
    timeout=DEFAULT_TIMEOUT,
    env: dict | None = None,
) -> str:
    """Execute the command line.

    :param timeout:
        Timeout in seconds

    :return:
        Combined stdout and stderr

    :raise ForgeFailed:
        Non-zero exit code or timeout
    """

    for x in cmd_line:
        assert type(x) == str, f"Got non-string in command line: {x} in {cmd_line}"

    censored_command = " ".join(cmd_line)
    logger.info("Running %s in %s", censored_command, cwd)

    proc = psutil.Popen(cmd_line, stdin=DEVNULL, stdout=PIPE, stderr=PIPE, cwd=cwd, env=env)
    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except psutil.TimeoutExpired as e:
        proc.kill()
        proc.communicate()
        raise ForgeFailed(f"Timeout {timeout} seconds when running: {censored_command}") from e

    output = stdout.decode("utf-8", errors="replace") + stderr.decode("utf-8", errors="replace")

    if proc.returncode != 0:
        raise ForgeFailed(f"Return code {proc.returncode} when running: {censored_command}\nOutput is:\n{output}")

    logger.debug("Command output:\n%s", output)
    return output


class BuildCollaborator(ABC):
    """Get the sources and build artifacts for a repository.

    The verifier only talks to this interface,
    so it can be tested without git or forge.
    """

    @abstractmethod
    def fetch_source(self, repo: RepoDescriptor, sandbox: Path) -> Path:
        """Check out the repository under the sandbox.

        :return:
            Checkout directory
        """

    @abstractmethod
    def build(self, repo: RepoDescriptor, sandbox: Path) -> Path:
        """Compile the checked out repository.

        :return:
            Directory containing the forge JSON artifacts
        """


class ForgeBuildCollaborator(BuildCollaborator):
    """Clone with git, install with yarn, compile with forge."""

    def __init__(self, bytecode_hash=False, timeout=DEFAULT_TIMEOUT):
        """
        :param bytecode_hash:
            Keep the metadata hash in the compiled bytecode.

            By default we build with ``FOUNDRY_BYTECODE_HASH=none``.
        """
        self.bytecode_hash = bytecode_hash
        self.timeout = timeout

    def fetch_source(self, repo: RepoDescriptor, sandbox: Path) -> Path:
        git = which("git")
        assert git is not None, "No git command in path, needed for cloning sources"

        sandbox.mkdir(parents=True, exist_ok=True)
        checkout = sandbox / repo.name

        _exec_cmd([git, "clone", "--quiet", get_github_url(repo.repo), repo.name], cwd=sandbox, timeout=self.timeout)

        if repo.commit:
            _exec_cmd([git, "reset", "--hard", repo.commit], cwd=checkout, timeout=self.timeout)
            logger.info("Cloned %s at %s", repo.repo, repo.commit[0:8])
        else:
            logger.info("Cloned %s at the default branch", repo.repo)

        return checkout

    def build(self, repo: RepoDescriptor, sandbox: Path) -> Path:
        forge = which("forge")
        assert forge is not None, "No forge command in path, needed for building sources"

        checkout = sandbox / repo.name
        assert (checkout / "foundry.toml").exists(), f"foundry.toml missing: {checkout}"

        if (checkout / "package.json").exists():
            yarn = which("yarn")
            assert yarn is not None, f"No yarn command in path, needed for installing dependencies of {repo.repo}"
            _exec_cmd([yarn, "install", "--frozen-lockfile", "--silent"], cwd=checkout, timeout=self.timeout)
        else:
            logger.info("No package.json in %s, skipping yarn install", repo.repo)

        env = os.environ.copy()
        if not self.bytecode_hash:
            env["FOUNDRY_BYTECODE_HASH"] = "none"

        cmd_line = [forge, "build"] + repo.forge_flags.split()
        _exec_cmd(cmd_line, cwd=checkout, timeout=self.timeout, env=env)

        out_dir = checkout / FORGE_OUT_DIR
        assert out_dir.exists(), f"Forge did not produce {out_dir}"
        return out_dir


def get_artifact_key(source: str, contract_name: str) -> str:
    """Artifact lookup key: ``@org/repo/path/File.sol:Contract``."""
    return f"{source}:{contract_name}"


def _get_contract_name(path: Path, data: dict, source: str) -> str:
    # out/File.sol/Contract.json, or Contract.0.8.17.json when several compilers are used
    metadata = data.get("metadata")
    if isinstance(metadata, dict):
        target = metadata.get("settings", {}).get("compilationTarget", {})
        if source in target:
            return target[source]
    return path.name.split(".")[0]


def index_forge_artifacts(prefix: str, out_dir: Path, mapping: dict[str, Path] | None = None) -> dict[str, Path]:
    """Map source paths to forge JSON artifacts.

    Each artifact records the source it was compiled from in
    ``ast.absolutePath``, relative to the repository root.
    We prefix it with the repository name, so keys use the same path as
    ``source`` in the deployment manifest:

    ``@gearbox-protocol/core-v3/`` + ``contracts/core/AddressProviderV3.sol``

    Forge writes one artifact per contract, so the key also carries
    the contract name, see :py:func:`get_artifact_key`.

    Files that are not forge artifacts are skipped.

    :param prefix:
        Repository name with a trailing slash

    :param mapping:
        Add to an existing mapping, to index several repositories

    :raise ArtifactIndexError:
        The same prefixed source path and contract is found twice
    """
    if mapping is None:
        mapping = {}

    for path in sorted(out_dir.rglob("*.json")):
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            source = data["ast"]["absolutePath"]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.debug("File %s is not a forge artifact: %s", path, e)
            continue

        key = get_artifact_key(prefix + source, _get_contract_name(path, data, source))
        if key in mapping:
            raise ArtifactIndexError(f"Duplicate artifact {key} found in {path} and {mapping[key]}")

        mapping[key] = path

    logger.info("Indexed %d artifacts from %s", len(mapping), out_dir)
    return mapping

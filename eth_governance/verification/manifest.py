"""Deployment manifests.

A deploy repository (``deploy-v2``, ``deploy-v3``) records every deployment
batch in ``deploys/<safeTxHash>.json``. The file maps a label to
the contract deployed:

.. code-block:: json

    {
        "crvUSDETHCRV:CurveCryptoLPPriceFeed": {
            "contractName": "CurveCryptoLPPriceFeed",
            "contractAddress": "0x603e987f2B7d72EF3c6d4D0F32776eCfD54C483e",
            "constructorArguments": ["0xcF64...", "PRICEFEED_crvUSDETHCRV"],
            "verify": true,
            "verified": false,
            "metadata": {
                "compiler": "0.8.17+commit.8df45f5f",
                "optimizer": {"enabled": true, "runs": 10000},
                "source": "@gearbox-protocol/integrations-v3/contracts/oracles/curve/CurveCryptoLPPriceFeed.sol",
                "commit": "5324a48a9e4144d5f3fa0f83e5d788e1d7336de0"
            },
            "encodedConstructorArgs": "000000000000000000000000cf64..."
        }
    }

The manifest is the ground truth: we rebuild the listed sources
and check the deployed init code against it.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from eth_typing import HexAddress

from eth_governance.abi import hex_to_bytes
from eth_governance.config import DEFAULT_ALLOWED_ORG, DEFAULT_ALLOWED_REPOS, DEFAULT_DEPLOY_REPOS


logger = logging.getLogger(__name__)


#: Hardhat/Anvil well-known account #0 used with ``forge create --unlocked``
DEFAULT_FORGE_CREATE_SENDER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"


class ManifestError(Exception):
    """Deployment manifest cannot be used for verification."""


@dataclass(slots=True, frozen=True)
class ManifestEntry:
    """One deployed contract in the manifest."""

    #: Label in the manifest
    label: str

    contract_name: str

    #: Expected CREATE2 address
    contract_address: HexAddress

    #: Human readable constructor arguments, as passed to ``forge create``
    constructor_arguments: tuple[str, ...]

    #: ``@org/repo/path/to/Contract.sol``
    source: str

    #: Solidity compiler version, e.g. ``0.8.17+commit.8df45f5f``
    compiler: str | None

    optimizer_enabled: bool

    optimizer_runs: int | None

    #: Source commit, if pinned
    commit: str | None

    #: ABI encoded constructor arguments, appended to the creation bytecode
    encoded_constructor_args: bytes

    @classmethod
    def parse(cls, label: str, data: dict) -> "ManifestEntry":
        """Parse one manifest JSON entry.

        :raise ManifestError:
            Required keys are missing
        """
        try:
            metadata = data["metadata"]
            optimizer = metadata.get("optimizer") or {}
            return cls(
                label=label,
                contract_name=data["contractName"],
                contract_address=data["contractAddress"],
                constructor_arguments=tuple(str(a) for a in data.get("constructorArguments", [])),
                source=metadata["source"],
                compiler=metadata.get("compiler"),
                optimizer_enabled=bool(optimizer.get("enabled")),
                optimizer_runs=optimizer.get("runs"),
                commit=metadata.get("commit"),
                encoded_constructor_args=hex_to_bytes(data.get("encodedConstructorArgs") or ""),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ManifestError(f"Bad manifest entry {label}: {e}") from e


@dataclass(slots=True, frozen=True)
class RepoDescriptor:
    """Source repository we need to clone and build."""

    #: ``@org/name``
    repo: str

    #: Commit to check out, ``None`` for the default branch head
    commit: str | None

    #: ``forge build`` flags
    forge_flags: str

    @property
    def name(self) -> str:
        """Repository name without the organisation, the checkout directory name."""
        return self.repo.split("/")[1]


def get_github_url(repo: str) -> str:
    """Get the clone URL of a repository.

    Example: ``@gearbox-protocol/core-v3`` -> ``https://github.com/gearbox-protocol/core-v3.git``
    """
    path = repo.removeprefix("@").removesuffix("/")
    return f"https://github.com/{path}.git"


def get_forge_build_flags(entry: ManifestEntry) -> str:
    """Get CLI flags to pass to ``forge build``.

    Example: ``--use 0.8.17 --optimize --optimizer-runs 10000``.

    See `forge build <https://book.getfoundry.sh/reference/forge/forge-build>`__.
    """
    flags = []
    if entry.compiler:
        flags += ["--use", entry.compiler.split("+")[0]]
    if entry.optimizer_enabled:
        flags.append("--optimize")
        if entry.optimizer_runs:
            flags += ["--optimizer-runs", str(entry.optimizer_runs)]
    return " ".join(flags)


def get_contract_repo(
    entry: ManifestEntry,
    allowed_org: str = DEFAULT_ALLOWED_ORG,
    allowed_repos: tuple[str, ...] = DEFAULT_ALLOWED_REPOS,
) -> RepoDescriptor:
    """Figure out which repository a manifest entry is built from.

    Sources may be referred through ``node_modules``,
    which we ignore.

    :raise ManifestError:
        Unknown organisation or a repository not on the allow list
    """
    parts = [p.lower() for p in entry.source.split("/") if p != "node_modules"][0:2]

    if len(parts) < 2 or not parts[1]:
        raise ManifestError(f"Unknown repo for source '{entry.source}'")

    org, name = parts

    if org != allowed_org:
        raise ManifestError(f"Unknown org for source '{entry.source}'")

    if name not in allowed_repos:
        raise ManifestError(f"Non-whitelisted repo for source '{entry.source}'")

    return RepoDescriptor(
        repo=f"{org}/{name}",
        commit=entry.commit,
        forge_flags=get_forge_build_flags(entry),
    )


def _quote_argument(arg: str) -> str:
    # Strings with spaces in quotes, addresses and numbers as is
    if " " in arg:
        return f'"{arg}"'
    return arg


def get_forge_create_flags(entry: ManifestEntry, sender: HexAddress | str = DEFAULT_FORGE_CREATE_SENDER) -> str:
    """Get CLI flags to reproduce a deployment with ``forge create``.

    Example output::

        --use 0.8.17 --optimize --optimizer-runs 10000 --unlocked --from 0xf39F... --json
        contracts/oracles/curve/CurveCryptoLPPriceFeed.sol:CurveCryptoLPPriceFeed
        --constructor-args 0xcF64... "Some name"
    """
    repo = get_contract_repo(entry)
    src = entry.source.replace(repo.repo + "/", "") + ":" + entry.contract_name
    flags = [
        get_forge_build_flags(entry),
        "--unlocked",
        "--from",
        sender,
        "--json",
        src,
        "--constructor-args",
    ] + [_quote_argument(a) for a in entry.constructor_arguments]
    return " ".join(flags)


def parse_manifest(data: dict) -> list[ManifestEntry]:
    """Parse manifest JSON document."""
    if not isinstance(data, dict):
        raise ManifestError(f"Manifest must be a JSON object, got {type(data)}")
    return [ManifestEntry.parse(label, entry) for label, entry in data.items()]


def validate_manifest(
    entries: list[ManifestEntry],
    allowed_org: str = DEFAULT_ALLOWED_ORG,
    allowed_repos: tuple[str, ...] = DEFAULT_ALLOWED_REPOS,
) -> list[RepoDescriptor]:
    """Get the repositories to build for a manifest.

    All contracts coming from the same repository must be built
    from the same commit with the same compiler settings.

    :return:
        One descriptor per repository, in the manifest order

    :raise ManifestError:
        Disallowed repository, or conflicting commits or settings within a repository
    """
    repos: dict[str, RepoDescriptor] = {}
    for entry in entries:
        repo = get_contract_repo(entry, allowed_org, allowed_repos)
        old = repos.get(repo.repo)
        if old is not None:
            if old.commit != repo.commit:
                raise ManifestError(f"Deploy uses multiple commits from repo {repo.repo}: {old.commit} and {repo.commit}")
            if old.forge_flags != repo.forge_flags:
                raise ManifestError(f"Deploy uses different forge settings within repo {repo.repo}: '{old.forge_flags}' and '{repo.forge_flags}'")
        repos[repo.repo] = repo
    return list(repos.values())


def load_manifest(path: Path) -> list[ManifestEntry]:
    """Read a manifest file.

    :raise ManifestError:
        Not valid JSON
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ManifestError(f"Manifest {path} is not valid JSON: {e}") from e
    return parse_manifest(data)


def find_manifest(
    safe_tx_hash: str,
    sandbox: Path,
    deploy_repos: tuple[str, ...] = DEFAULT_DEPLOY_REPOS,
) -> list[ManifestEntry]:
    """Find the manifest of a Safe transaction in cloned deploy repositories.

    Looks for ``<sandbox>/<deploy repo>/deploys/<safeTxHash>.json``.
    The first readable file wins.

    :raise ManifestError:
        No deploy repository has the manifest
    """
    for repo in deploy_repos:
        path = sandbox / repo / "deploys" / f"{safe_tx_hash}.json"
        if not path.exists():
            continue

        try:
            entries = load_manifest(path)
        except (OSError, ManifestError) as e:
            logger.warning("Could not read manifest %s: %s", path, e)
            continue

        logger.info("Using manifest %s with %d contracts", path, len(entries))
        return entries

    raise ManifestError(f"Metadata file for safe tx {safe_tx_hash} not found in {deploy_repos}")

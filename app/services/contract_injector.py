"""Inject deployed contract addresses into a FileSet.

Generated web3 code refers to its contracts before they exist.  Once the
contracts are deployed the placeholders are replaced:

- ``__MY_TOKEN_ADDRESS__`` tokens (upper snake case of the contract name)
  anywhere in the source;
- the zero address in files that mention the contract by name;
- ``NEXT_PUBLIC_MY_TOKEN_ADDRESS=`` entries in ``.env`` / ``.env.local``.
"""

import logging
import re

from shipwright_kit.fileset import FileSet

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
_ENV_FILES = (".env", ".env.local")
_TEXT_SUFFIXES = (".ts", ".tsx", ".js", ".jsx", ".json", ".mjs", ".cjs")

_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_NON_WORD_RE = re.compile(r"[^A-Za-z0-9]+")


def upper_snake(name: str) -> str:
    """``MyToken`` -> ``MY_TOKEN``."""
    spaced = _CAMEL_BOUNDARY_RE.sub("_", name)
    return _NON_WORD_RE.sub("_", spaced).strip("_").upper()


def _upsert_env(content: str, key: str, value: str) -> str:
    pattern = re.compile(rf"^{re.escape(key)}=.*$", re.MULTILINE)
    line = f"{key}={value}"
    if pattern.search(content):
        return pattern.sub(line, content)
    sep = "" if not content or content.endswith("\n") else "\n"
    return f"{content}{sep}{line}\n"


def inject_contract_addresses(files: FileSet, addresses: dict[str, str]) -> FileSet:
    """Return a copy of *files* with *addresses* (``{name: address}``) injected."""
    if not addresses:
        return dict(files)

    updated: FileSet = {}
    for path, content in files.items():
        new_content = content
        if path.endswith(_TEXT_SUFFIXES):
            for name, address in addresses.items():
                token = f"__{upper_snake(name)}_ADDRESS__"
                new_content = new_content.replace(token, address)
                if ZERO_ADDRESS in new_content and name in new_content:
                    new_content = new_content.replace(ZERO_ADDRESS, address)
        elif path in _ENV_FILES:
            for name, address in addresses.items():
                new_content = _upsert_env(new_content, f"NEXT_PUBLIC_{upper_snake(name)}_ADDRESS", address)
        if new_content != content:
            logger.debug("Injected contract address(es) into %s", path)
        updated[path] = new_content
    return updated


def contract_deploy_payload(files: FileSet) -> FileSet:
    """The files sent to the contract deployer: everything but project hardhat configs.

    The deployer brings its own network configuration.
    """
    return {
        path: content
        for path, content in files.items()
        if not path.rsplit("/", 1)[-1].startswith("hardhat.config.")
    }

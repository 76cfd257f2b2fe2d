"""Target sandbox: shallow repository checkout into a private temp directory, and URL safety gate."""

import asyncio
import ipaddress
import logging
import os
import re
import shutil
import socket
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import quote, urlsplit

from pydantic import SecretStr

from vibetrace.schemas.findings import SANDBOX_DIR_PREFIX
from vibetrace.schemas.scan import REPO_FULL_NAME_PATTERN
from vibetrace.services.process import run_command

if TYPE_CHECKING:
    from vibetrace.core.config import Settings

logger = logging.getLogger(__name__)

_BLOCKED_HOSTNAMES = frozenset({"localhost", "ip6-localhost", "ip6-loopback"})
_BLOCKED_HOST_SUFFIXES = (".localhost", ".local", ".internal")
_URL_CREDENTIALS_PATTERN = re.compile(r"(https?://)[^@\s/]+@")
_MAX_STDERR_CHARS = 500


class AcquisitionError(Exception):
    """Raised when a repository checkout cannot be obtained (bad credential, network failure, timeout)."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


class SafetyRejection(Exception):
    """Raised when a target URL is unparsable or resolves to a loopback, link-local or private address."""

    def __init__(self, message: str, url: str) -> None:
        self.message = message
        self.url = url
        super().__init__(message)


@dataclass
class Sandbox:
    """An exclusively owned checkout directory; removed by release_sandbox."""

    path: Path
    repo_full_name: str

    @property
    def root(self) -> str:
        return str(self.path)


def redact_credentials(text: str, secret: str | None = None) -> str:
    """Remove URL-embedded credentials (and the literal secret, if given) from text."""
    if not text:
        return ""
    if secret:
        text = text.replace(secret, "***")
        text = text.replace(quote(secret, safe=""), "***")
    return _URL_CREDENTIALS_PATTERN.sub(r"\1***@", text)


def _remove_tree(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass


async def acquire_repository(
    repo_full_name: str,
    credential: SecretStr | str,
    settings: "Settings",
) -> Sandbox:
    """
    Shallow-clone (depth 1) owner/name over authenticated HTTPS into a new temp directory.

    Raises AcquisitionError on an invalid name, a non-zero git exit, a timeout,
    or an empty checkout. The directory is removed before raising.
    """
    if not repo_full_name or not REPO_FULL_NAME_PATTERN.fullmatch(repo_full_name) or ".." in repo_full_name:
        raise AcquisitionError(f"Invalid repository name: {repo_full_name!r}")
    token = credential.get_secret_value() if isinstance(credential, SecretStr) else credential
    if not token:
        raise AcquisitionError("A repository access token is required for checkout.")

    path = Path(tempfile.mkdtemp(prefix=SANDBOX_DIR_PREFIX))
    clone_url = f"https://x-access-token:{quote(token, safe='')}@{settings.GIT_HOST}/{repo_full_name}.git"
    env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
    cmd = [settings.GIT_BINARY, "clone", "--depth", "1", "--quiet", clone_url, str(path)]

    logger.info(
        "Cloning repository",
        extra={"repo": repo_full_name, "timeout_seconds": settings.CLONE_TIMEOUT_SEC},
    )
    try:
        result = await run_command(cmd, settings.CLONE_TIMEOUT_SEC, env=env)
    except OSError as e:
        _remove_tree(path)
        raise AcquisitionError("git could not be started; check GIT_BINARY.", cause=e) from e
    except BaseException:
        _remove_tree(path)
        raise

    if result.timed_out:
        _remove_tree(path)
        raise AcquisitionError(
            f"Repository checkout timed out after {settings.CLONE_TIMEOUT_SEC:g} seconds."
        )
    if result.returncode != 0:
        _remove_tree(path)
        stderr = redact_credentials(result.stderr, token).strip()[:_MAX_STDERR_CHARS]
        raise AcquisitionError(
            f"Repository checkout failed (git exit code {result.returncode}): {stderr or 'no output'}"
        )
    if not any(path.iterdir()):
        _remove_tree(path)
        raise AcquisitionError("Repository checkout produced an empty directory.")

    logger.info(
        "Repository cloned",
        extra={"repo": repo_full_name, "duration_seconds": result.duration_seconds},
    )
    return Sandbox(path=path, repo_full_name=repo_full_name)


def release_sandbox(sandbox: Sandbox) -> None:
    """Recursively delete the checkout directory. Errors are logged, not raised."""
    try:
        _remove_tree(sandbox.path)
    except OSError:
        logger.warning("Failed to remove sandbox %s", sandbox.path, exc_info=True)
        return
    logger.info("Sandbox released", extra={"repo": sandbox.repo_full_name})


def is_public_address(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    """True if ip is globally routable (not private, loopback, link-local, reserved, multicast)."""
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return not (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )


async def validate_target_url(url: str) -> str:
    """
    Safety gate for dynamic analysis: return url if its host resolves only to public addresses.

    Raises SafetyRejection for unparsable URLs, non-http(s) schemes, internal host
    names, private/loopback/link-local addresses, and names that do not resolve.
    """
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
        port = parts.port
    except ValueError as e:
        raise SafetyRejection(f"Unparsable target URL: {e}", url) from e
    if parts.scheme not in ("http", "https") or not hostname:
        raise SafetyRejection("Target URL must be an absolute http(s) URL.", url)

    host = hostname.lower().rstrip(".")
    if host in _BLOCKED_HOSTNAMES or host.endswith(_BLOCKED_HOST_SUFFIXES):
        raise SafetyRejection(f"Target host {host!r} is internal.", url)

    try:
        literal = ipaddress.ip_address(host)
    except ValueError:
        literal = None
    if literal is not None:
        if not is_public_address(literal):
            raise SafetyRejection(f"Target address {host} is not public.", url)
        return url

    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except socket.gaierror as e:
        raise SafetyRejection(f"Target host {host!r} does not resolve.", url) from e
    if not infos:
        raise SafetyRejection(f"Target host {host!r} does not resolve.", url)
    for info in infos:
        address = info[4][0]
        try:
            ip = ipaddress.ip_address(address.split("%", 1)[0])
        except ValueError as e:
            raise SafetyRejection(f"Target host {host!r} resolved to an unparsable address.", url) from e
        if not is_public_address(ip):
            raise SafetyRejection(f"Target host {host!r} resolves to non-public address {ip}.", url)
    return url

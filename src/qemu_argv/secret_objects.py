"""Secret, TLS credential and reservation manager objects."""

from __future__ import annotations

from pathlib import Path

from qemu_argv import constants
from qemu_argv._logging import get_logger
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.devices import ReservationInfo, SecretInfo, TlsInfo
from qemu_argv.emitter import TreeKind
from qemu_argv.exceptions import ConfigUnsupportedError
from qemu_argv.fragments import Fragment
from qemu_argv.props import PropRef, PropTree

logger = get_logger(__name__)


def object_fragment(tree: PropTree, caps: CapabilitySet, *, references: tuple[str | None, ...] = ()) -> Fragment:
    return Fragment.from_tree(tree, caps, TreeKind.OBJECT, references=references)


def master_key_fragment(caps: CapabilitySet, key_path: Path) -> Fragment | None:
    """The per-domain master key secret, or None when secrets are unsupported.

    Absence is graceful degradation: secrets are then passed in clear by
    other means and the rest of the command line is unaffected.
    """
    if not caps.has(Cap.OBJECT_SECRET):
        logger.info(
            "Master key secret object not supported, continuing without it",
            extra={"capability": Cap.OBJECT_SECRET.value},
        )
        return None
    tree = PropTree.object("secret", constants.MASTER_KEY_ALIAS).add("format", "raw").add("file", str(key_path))
    return object_fragment(tree, caps)


def secret_props(secret: SecretInfo) -> PropTree:
    tree = PropTree.object("secret", secret.alias).add("data", secret.data)
    if secret.encrypted:
        tree.add("keyid", PropRef(constants.MASTER_KEY_ALIAS)).add("iv", secret.iv)
    return tree.add("format", "base64")


def secret_fragment(secret: SecretInfo, caps: CapabilitySet) -> Fragment:
    if not caps.has(Cap.OBJECT_SECRET):
        raise ConfigUnsupportedError(
            f"secret object '{secret.alias}' requires secret object support",
            context={"alias": secret.alias, "capability": Cap.OBJECT_SECRET.value},
        )
    refs = (constants.MASTER_KEY_ALIAS,) if secret.encrypted else ()
    return object_fragment(secret_props(secret), caps, references=refs)


def tls_creds_props(tls: TlsInfo) -> PropTree:
    tree = PropTree.object("tls-creds-x509", tls.alias)
    tree.add("dir", tls.directory).add("endpoint", tls.endpoint).add("verify-peer", tls.verify_peer)
    if tls.secret is not None:
        tree.add("passwordid", PropRef(tls.secret.alias))
    return tree


def tls_creds_fragment(tls: TlsInfo, caps: CapabilitySet) -> Fragment:
    if not caps.has(Cap.OBJECT_TLS_CREDS_X509):
        raise ConfigUnsupportedError(
            f"TLS credentials '{tls.alias}' are not supported by this QEMU",
            context={"alias": tls.alias, "capability": Cap.OBJECT_TLS_CREDS_X509.value},
        )
    refs = (tls.secret.alias,) if tls.secret is not None else ()
    return object_fragment(tls_creds_props(tls), caps, references=refs)


def pr_manager_alias(res: ReservationInfo) -> str:
    if res.managed:
        return constants.MANAGED_PR_MANAGER_ALIAS
    if not res.alias:
        raise ConfigUnsupportedError("unmanaged persistent reservation manager needs an alias")
    return res.alias


def pr_manager_fragment(res: ReservationInfo, caps: CapabilitySet, default_socket: Path) -> Fragment:
    if not caps.has(Cap.PR_MANAGER_HELPER):
        raise ConfigUnsupportedError(
            "persistent reservations are not supported by this QEMU",
            context={"capability": Cap.PR_MANAGER_HELPER.value},
        )
    path = res.socket_path if res.socket_path and not res.managed else str(default_socket)
    tree = PropTree.object("pr-manager-helper", pr_manager_alias(res)).add("path", path)
    return object_fragment(tree, caps)

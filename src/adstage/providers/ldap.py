"""Active Directory client built on ldap3."""
from __future__ import annotations

import logging
import ssl
from collections.abc import Callable, Mapping, Sequence
from types import TracebackType
from typing import Any

from ldap3 import (
    ANONYMOUS,
    BASE,
    MODIFY_ADD,
    MODIFY_REPLACE,
    NONE,
    NTLM,
    SIMPLE,
    SUBTREE,
    Connection,
    Server,
    Tls,
)
from ldap3.core.exceptions import LDAPException
from ldap3.protocol.microsoft import security_descriptor_control
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import escape_rdn

from ..config import DirectoryConfig
from ..naming import account_key
from ..security import (
    AccessList,
    DescriptorError,
    SecurityDescriptor,
    Sid,
    decode_security_descriptor,
    encode_security_descriptor,
)
from .directory import DirectoryError, DirectoryObjectRef

LOGGER = logging.getLogger(__name__)

RESULT_SUCCESS = 0
RESULT_NO_SUCH_OBJECT = 32
RESULT_ENTRY_ALREADY_EXISTS = 68

# userAccountControl: WORKSTATION_TRUST_ACCOUNT | PASSWD_NOTREQD, as ADUC pre-stages computers.
PRESTAGED_COMPUTER_UAC = 0x1000 | 0x0020
DACL_SECURITY_INFORMATION = 0x04

ConnectionFactory = Callable[[DirectoryConfig], Any]


def build_connection(config: DirectoryConfig) -> Connection:
    """Return an unbound ldap3 connection for *config*."""
    if not config.server:
        raise DirectoryError("directory.server is not configured.")
    tls = None
    if config.use_ssl:
        tls = Tls(
            validate=ssl.CERT_REQUIRED if config.verify_tls else ssl.CERT_NONE,
            ca_certs_file=str(config.ca_cert) if config.ca_cert else None,
        )
    server = Server(
        config.server,
        port=config.effective_port,
        use_ssl=config.use_ssl,
        tls=tls,
        get_info=NONE,
        connect_timeout=config.connect_timeout,
    )
    if not config.bind_user:
        authentication = ANONYMOUS
    elif config.authentication == "ntlm":
        authentication = NTLM
    else:
        authentication = SIMPLE
    return Connection(
        server,
        user=config.bind_user,
        password=config.bind_password,
        authentication=authentication,
        raise_exceptions=False,
        receive_timeout=config.connect_timeout,
    )


class LdapDirectoryClient:
    """:class:`~adstage.providers.directory.DirectoryClient` for Active Directory.

    One bound connection is kept for the lifetime of the client; use it as a
    context manager around a whole batch.
    """

    def __init__(
        self,
        config: DirectoryConfig,
        *,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        self.config = config
        self._factory = connection_factory or build_connection
        self._connection: Any | None = None

    def __enter__(self) -> LdapDirectoryClient:
        self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def base_dn(self) -> str:
        if not self.config.base_dn:
            raise DirectoryError("directory.base_dn is not configured.")
        return self.config.base_dn

    def open(self) -> None:
        """Connect and bind; raise :class:`DirectoryError` on failure."""
        if self._connection is not None:
            return
        if not self.config.base_dn:
            raise DirectoryError("directory.base_dn is not configured.")
        target = f"{self.config.server}:{self.config.effective_port}"
        try:
            connection = self._factory(self.config)
            bound = connection.bind()
        except LDAPException as exc:
            raise DirectoryError(f"Cannot connect to {target}: {exc}") from exc
        if not bound:
            raise DirectoryError(f"Bind to {target} failed: {_describe(connection.result)}")
        LOGGER.debug("Bound to %s as %s", target, self.config.bind_user or "<anonymous>")
        self._connection = connection

    def close(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            connection.unbind()
        except LDAPException as exc:  # pragma: no cover - best effort on shutdown
            LOGGER.debug("Unbind failed: %s", exc)

    # ------------------------------------------------------------------
    def create_object(
        self,
        name: str,
        description: str,
        container_path: str,
    ) -> DirectoryObjectRef:
        key = account_key(name)
        dn = f"CN={escape_rdn(name)},{container_path}"
        attributes: dict[str, object] = {
            "sAMAccountName": key,
            "userAccountControl": PRESTAGED_COMPUTER_UAC,
        }
        if description.strip():
            attributes["description"] = description.strip()
        connection = self._require_connection()
        if not self._call(lambda: connection.add(dn, "computer", attributes), f"add {dn}"):
            raise DirectoryError(f"add {dn} failed: {_describe(connection.result)}")
        return DirectoryObjectRef(name=name, key=key, dn=dn)

    def find_object(self, key: str) -> DirectoryObjectRef | None:
        entries = self._search(
            f"(sAMAccountName={escape_filter_chars(key)})",
            ["sAMAccountName"],
        )
        if not entries:
            return None
        dn = str(entries[0]["dn"])
        name = key[:-1] if key.endswith("$") else key
        return DirectoryObjectRef(name=name, key=key, dn=dn)

    def read_access_list(self, ref: DirectoryObjectRef) -> AccessList:
        entries = self._search(
            "(objectClass=*)",
            ["nTSecurityDescriptor"],
            base=ref.dn,
            scope=BASE,
            controls=security_descriptor_control(sdflags=DACL_SECURITY_INFORMATION),
        )
        if not entries:
            raise DirectoryError(f"{ref.dn} not found while reading its security descriptor.")
        raw = _raw_value(entries[0], "nTSecurityDescriptor")
        if raw is None:
            raise DirectoryError(
                f"No nTSecurityDescriptor returned for {ref.dn}; check the bind account's rights."
            )
        descriptor = decode_security_descriptor(raw)
        return descriptor.dacl if descriptor.dacl is not None else AccessList()

    def write_access_list(self, ref: DirectoryObjectRef, acl: AccessList) -> None:
        payload = encode_security_descriptor(SecurityDescriptor.for_dacl(acl))
        changes = {"nTSecurityDescriptor": [(MODIFY_REPLACE, [payload])]}
        connection = self._require_connection()
        ok = self._call(
            lambda: connection.modify(
                ref.dn,
                changes,
                controls=security_descriptor_control(sdflags=DACL_SECURITY_INFORMATION),
            ),
            f"modify {ref.dn}",
        )
        if not ok:
            raise DirectoryError(
                f"Updating the DACL of {ref.dn} failed: {_describe(connection.result)}"
            )

    def resolve_principal(self, name: str) -> Sid:
        text = name.strip()
        if text.upper().startswith("S-1-"):
            return Sid.parse(text)

        account = text.split("\\", 1)[1] if "\\" in text else text
        clauses = [f"(sAMAccountName={escape_filter_chars(account)})"]
        if "@" in account:
            local = account.split("@", 1)[0]
            clauses = [
                f"(userPrincipalName={escape_filter_chars(account)})",
                f"(sAMAccountName={escape_filter_chars(local)})",
            ]
        search_filter = clauses[0] if len(clauses) == 1 else f"(|{''.join(clauses)})"

        entries = self._search(search_filter, ["objectSid"])
        if not entries:
            raise DirectoryError(f"Principal '{name}' not found under {self.base_dn}.")
        if len(entries) > 1:
            raise DirectoryError(f"Principal '{name}' is ambiguous ({len(entries)} matches).")
        raw = _raw_value(entries[0], "objectSid")
        if raw is None:
            raise DirectoryError(f"Principal '{name}' has no objectSid.")
        try:
            return Sid.from_bytes(raw)
        except DescriptorError as exc:
            raise DirectoryError(f"Principal '{name}' has a malformed objectSid: {exc}") from exc

    def add_group_member(self, group_name: str, object_key: str) -> None:
        group = escape_filter_chars(group_name)
        groups = self._search(
            f"(&(objectClass=group)(|(sAMAccountName={group})(cn={group})))",
            ["sAMAccountName"],
        )
        if not groups:
            raise DirectoryError(f"Group '{group_name}' not found.")
        if len(groups) > 1:
            raise DirectoryError(f"Group '{group_name}' is ambiguous ({len(groups)} matches).")
        member = self.find_object(object_key)
        if member is None:
            raise DirectoryError(f"Member '{object_key}' not found.")

        group_dn = str(groups[0]["dn"])
        connection = self._require_connection()
        changes = {"member": [(MODIFY_ADD, [member.dn])]}
        if self._call(lambda: connection.modify(group_dn, changes), f"modify {group_dn}"):
            return
        if _result_code(connection.result) == RESULT_ENTRY_ALREADY_EXISTS:
            LOGGER.debug("%s is already a member of %s", member.dn, group_dn)
            return
        raise DirectoryError(
            f"Adding {member.dn} to {group_dn} failed: {_describe(connection.result)}"
        )

    # ------------------------------------------------------------------
    def _require_connection(self) -> Any:
        if self._connection is None:
            self.open()
        return self._connection

    def _call(self, action: Callable[[], bool], label: str) -> bool:
        try:
            return bool(action())
        except LDAPException as exc:
            raise DirectoryError(f"{label} raised: {exc}") from exc

    def _search(
        self,
        search_filter: str,
        attributes: Sequence[str],
        *,
        base: str | None = None,
        scope: str = SUBTREE,
        controls: list[tuple[str, bool, bytes]] | None = None,
    ) -> list[Mapping[str, Any]]:
        connection = self._require_connection()
        search_base = base or self.base_dn
        self._call(
            lambda: connection.search(
                search_base,
                search_filter,
                search_scope=scope,
                attributes=list(attributes),
                controls=controls,
            ),
            f"search {search_filter}",
        )
        code = _result_code(connection.result)
        if code == RESULT_NO_SUCH_OBJECT:
            return []
        if code != RESULT_SUCCESS:
            raise DirectoryError(
                f"search {search_filter} under {search_base} failed: "
                f"{_describe(connection.result)}"
            )
        return [
            item
            for item in (connection.response or [])
            if item.get("type") == "searchResEntry"
        ]


def _raw_value(entry: Mapping[str, Any], attribute: str) -> bytes | None:
    raw = entry.get("raw_attributes") or {}
    wanted = attribute.lower()
    for key, values in raw.items():
        if str(key).lower() == wanted and values:
            value = values[0]
            return bytes(value)
    return None


def _result_code(result: Mapping[str, Any] | None) -> int | None:
    if not result:
        return None
    code = result.get("result")
    return int(code) if code is not None else None


def _describe(result: Mapping[str, Any] | None) -> str:
    if not result:
        return "no result from server"
    description = result.get("description") or "error"
    message = (result.get("message") or "").strip()
    code = result.get("result")
    detail = f"{description} (code {code})"
    return f"{detail}: {message}" if message else detail


__all__ = ["LdapDirectoryClient", "build_connection"]

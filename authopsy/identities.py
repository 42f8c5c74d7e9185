import re
import logging
from enum import Enum
from typing import Dict, Optional
from dataclasses import dataclass

from .config import CredentialConfig, InputError

logger = logging.getLogger(__name__)

HEADER_NAME_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")


class Role(Enum):
    """Identity a request is replayed under."""
    ADMIN = "admin"
    USER = "user"
    ANONYMOUS = "anon"

    @property
    def label(self) -> str:
        return {Role.ADMIN: 'Admin', Role.USER: 'User', Role.ANONYMOUS: 'Anon'}[self]


SCAN_ROLES = (Role.ADMIN, Role.USER, Role.ANONYMOUS)


@dataclass(frozen=True)
class CredentialSet:
    """The three fixed identities of a scan session."""
    admin: Optional[str]
    user: str
    header_name: str = 'Authorization'
    anon: Optional[str] = None

    @property
    def anon_is_absent(self) -> bool:
        return self.anon is None

    def credential_for(self, role: Role) -> Optional[str]:
        """
        Credential header value for a role, or None when the header is omitted.
        """
        if role is Role.ADMIN:
            return self.admin
        if role is Role.USER:
            return self.user
        return None if self.anon_is_absent else self.anon

    def describe(self) -> Dict[str, Dict[str, object]]:
        """Report-safe summary: header name and presence only, never values."""
        return {
            role.value: {
                'header': self.header_name,
                'has_credential': self.credential_for(role) is not None
            }
            for role in SCAN_ROLES
        }


def _check_value(name: str, value: Optional[str], required: bool) -> Optional[str]:
    if value is None:
        if required:
            raise InputError(f"{name} credential is required")
        return None
    if not value.strip():
        raise InputError(f"{name} credential must not be empty")
    if '\r' in value or '\n' in value:
        raise InputError(f"{name} credential must not contain line breaks")
    if not value.isascii():
        raise InputError(f"{name} credential must contain only ASCII characters")
    return value


def build_credentials(config: CredentialConfig, require_admin: bool = True) -> CredentialSet:
    """
    Validate raw credentials and build the session's CredentialSet.

    Args:
        config: Credential values from the config file or command line
        require_admin: False for fuzz sessions, which only replay as User

    Returns:
        CredentialSet ready for request resolution

    Raises:
        InputError: If a credential or the header name is malformed
    """
    header_name = (config.header_name or '').strip()
    if not HEADER_NAME_RE.match(header_name):
        raise InputError(f"Invalid credential header name: '{config.header_name}'")

    credentials = CredentialSet(
        admin=_check_value('Admin', config.admin, require_admin),
        user=_check_value('User', config.user, True),
        header_name=header_name,
        anon=_check_value('Anonymous', config.anon, False)
    )

    logger.info(
        f"Credentials loaded: header={header_name}, "
        f"admin={'set' if credentials.admin else 'unset'}, "
        f"anonymous={'credential-less' if credentials.anon_is_absent else 'custom'}"
    )
    return credentials

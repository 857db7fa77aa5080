"""
Account Directory

Server-side lookup of an account's current role and department. The HTTP
layer resolves the acting account here on every request instead of
trusting a role supplied by the client.

The directory can be seeded from a YAML file:

    accounts:
      - user_id: tl-photo
        role: team_leader
        department: photography
        full_name: Photo Lead
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, Any, List

import yaml

from .task_model import Actor, Department, UserRole

logger = logging.getLogger("accounts")


@dataclass
class Account:
    user_id: str
    role: UserRole
    department: Optional[Department] = None
    full_name: str = ""
    email: Optional[str] = None
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "role": self.role.value,
            "department": self.department.value if self.department else None,
            "full_name": self.full_name,
            "email": self.email,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Account":
        department = data.get("department")
        return cls(
            user_id=str(data["user_id"]),
            role=UserRole(data["role"]),
            department=Department(department) if department else None,
            full_name=data.get("full_name", ""),
            email=data.get("email"),
            is_active=bool(data.get("is_active", True)),
        )


class AccountDirectory:
    """In-memory account directory."""

    def __init__(self, accounts_file: Optional[Path] = None):
        self._accounts: Dict[str, Account] = {}
        if accounts_file is not None:
            self.load_yaml(accounts_file)

    def load_yaml(self, path: Path) -> int:
        """Seed accounts from a YAML file. Returns the number loaded."""
        if not path.exists():
            logger.warning(f"Accounts file not found: {path}")
            return 0

        data = yaml.safe_load(path.read_text()) or {}
        loaded = 0
        for entry in data.get("accounts", []):
            try:
                account = Account.from_dict(entry)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping invalid account entry {entry!r}: {e}")
                continue
            self._accounts[account.user_id] = account
            loaded += 1

        logger.info(f"Loaded {loaded} accounts from {path}")
        return loaded

    def upsert(
        self,
        user_id: str,
        role: UserRole,
        department: Optional[Department] = None,
        full_name: str = "",
        email: Optional[str] = None,
        is_active: bool = True,
    ) -> Account:
        """Create or replace an account."""
        account = Account(
            user_id=user_id,
            role=role,
            department=department,
            full_name=full_name,
            email=email,
            is_active=is_active,
        )
        previous = self._accounts.get(user_id)
        self._accounts[user_id] = account
        if previous and (previous.role != role or previous.department != department):
            logger.info(
                f"Account {user_id} changed: {previous.role.value}/{previous.department} "
                f"-> {role.value}/{department}"
            )
        return account

    def get(self, user_id: str) -> Optional[Account]:
        return self._accounts.get(user_id)

    def resolve_actor(self, user_id: str) -> Optional[Actor]:
        """Current role and department of an active account, or None."""
        account = self._accounts.get(user_id)
        if account is None or not account.is_active:
            return None
        return Actor(user_id=account.user_id, role=account.role, department=account.department)

    def leads_for(self, department: Department) -> List[str]:
        """
        Active team leaders and account managers responsible for a department.

        A lead without a department manages every department.
        """
        return [
            a.user_id for a in self._accounts.values()
            if a.is_active
            and a.role in UserRole.leads()
            and (a.department is None or a.department == department)
        ]

    def list_accounts(self, role: Optional[UserRole] = None) -> List[Account]:
        accounts = list(self._accounts.values())
        if role is not None:
            accounts = [a for a in accounts if a.role == role]
        return accounts


logger.info("Account Directory module loaded")

"""User service backed by the pooled database manager."""

import json
import math
import re
from typing import Any, Dict, List, Optional

from ..config import UserConfig
from ..core.constants import USER_ROLES, USER_UPDATABLE_FIELDS
from ..database.manager import DatabaseManager
from ..exceptions import UserError, ValidationError
from ..logging import get_logger

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(email: Any) -> bool:
    return isinstance(email, str) and bool(EMAIL_PATTERN.match(email))


class UserService:
    """User CRUD with optional audit logging."""

    def __init__(self, database: DatabaseManager, settings: Optional[UserConfig] = None):
        self.database = database
        self.settings = settings or UserConfig()
        self.logger = get_logger(__name__).bind(service="UserService")
        self.logger.info(
            "UserService initialized",
            max_users=self.settings.max_users,
            enable_audit_log=self.settings.enable_audit_log,
        )

    async def create_user(self, user_data: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and insert a new user."""
        self.logger.info("Creating user", email=user_data.get("email"))

        try:
            self._validate_user_data(user_data)

            existing = await self.get_user_by_email(user_data["email"])
            if existing:
                raise UserError("User with this email already exists", {"email": user_data["email"]})

            result = await self.database.query(
                """
                INSERT INTO users (name, email, role, created_at, updated_at)
                VALUES ($1, $2, $3, NOW(), NOW())
                RETURNING id, name, email, role, created_at
                """,
                [user_data["name"], user_data["email"], user_data["role"]],
            )
            user = {
                "name": user_data["name"],
                "email": user_data["email"],
                "role": user_data["role"],
                **(result.first or {}),
            }

            self.logger.info("User created successfully", user_id=user.get("id"), role=user["role"])

            if self.settings.enable_audit_log:
                await self._log_audit_event("USER_CREATED", user.get("id"), user_data)

            return user

        except Exception as e:
            self.logger.error("Failed to create user", error=str(e), email=user_data.get("email"))
            raise

    async def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        """Fetch a user by id."""
        self.logger.debug("Getting user by ID", user_id=user_id)

        result = await self.database.query(
            """
            SELECT id, name, email, role, created_at, updated_at
            FROM users
            WHERE id = $1
            """,
            [user_id],
        )

        if not result.rows:
            self.logger.warning("User not found", user_id=user_id)
            return None
        return result.first

    async def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """Fetch a user by email. Only a row carrying the same email counts as a match."""
        self.logger.debug("Getting user by email", email=email)

        result = await self.database.query(
            """
            SELECT id, name, email, role, created_at, updated_at
            FROM users
            WHERE email = $1
            """,
            [email],
        )

        for row in result.rows:
            if row.get("email") == email:
                return row
        return None

    async def update_user(self, user_id: int, update_data: Dict[str, Any]) -> Dict[str, Any]:
        """Update the allowed fields (name, email, role) of a user."""
        self.logger.info("Updating user", user_id=user_id, updates=sorted(update_data))

        try:
            current = await self.get_user(user_id)
            if current is None:
                raise UserError("User not found", {"user_id": user_id})

            updates = {k: v for k, v in update_data.items() if k in USER_UPDATABLE_FIELDS}
            if not updates:
                raise ValidationError("No valid fields to update", {"allowed": list(USER_UPDATABLE_FIELDS)})
            if "role" in updates and updates["role"] not in USER_ROLES:
                raise ValidationError(f"Role must be one of: {', '.join(USER_ROLES)}")
            if "email" in updates and not is_valid_email(updates["email"]):
                raise ValidationError("Valid email is required")

            assignments = [f"{field} = ${index}" for index, field in enumerate(updates, start=1)]
            assignments.append("updated_at = NOW()")
            params: List[Any] = list(updates.values()) + [user_id]

            await self.database.query(
                f"""
                UPDATE users
                SET {', '.join(assignments)}
                WHERE id = ${len(params)}
                RETURNING id, name, email, role, created_at, updated_at
                """,
                params,
            )
            updated = {**current, **updates, "id": user_id}

            self.logger.info("User updated successfully", user_id=user_id, updated_fields=sorted(updates))

            if self.settings.enable_audit_log:
                await self._log_audit_event("USER_UPDATED", user_id, {"previous": current, "current": updated})

            return updated

        except Exception as e:
            self.logger.error("Failed to update user", error=str(e), user_id=user_id)
            raise

    async def delete_user(self, user_id: int) -> bool:
        """Delete a user."""
        self.logger.info("Deleting user", user_id=user_id)

        try:
            user = await self.get_user(user_id)
            if user is None:
                raise UserError("User not found", {"user_id": user_id})

            result = await self.database.query("DELETE FROM users WHERE id = $1", [user_id])
            if result.row_count == 0:
                raise UserError("User not found", {"user_id": user_id})

            self.logger.info("User deleted successfully", user_id=user_id)

            if self.settings.enable_audit_log:
                await self._log_audit_event("USER_DELETED", user_id, {"deleted_user": user})

            return True

        except Exception as e:
            self.logger.error("Failed to delete user", error=str(e), user_id=user_id)
            raise

    async def list_users(self, page: int = 1, limit: int = 10, role: Optional[str] = None) -> Dict[str, Any]:
        """Page through users, optionally filtered by role."""
        self.logger.debug("Listing users", page=page, limit=limit, role=role)
        offset = (page - 1) * limit

        query = "SELECT id, name, email, role, created_at, updated_at FROM users"
        params: List[Any] = []
        if role:
            query += " WHERE role = $1"
            params.append(role)
        query += f" ORDER BY created_at DESC LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}"
        result = await self.database.query(query, params + [limit, offset])

        count_query = "SELECT COUNT(*) AS total FROM users" + (" WHERE role = $1" if role else "")
        count_result = await self.database.query(count_query, params)
        total = int(count_result.first["total"]) if count_result.first else 0

        return {
            "users": result.rows,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if limit else 0,
            },
        }

    async def get_user_statistics(self) -> Dict[str, Any]:
        self.logger.debug("Getting user statistics")

        result = await self.database.query(
            """
            SELECT COUNT(*) AS total,
                   COUNT(CASE WHEN role = 'admin' THEN 1 END) AS admin_count,
                   COUNT(CASE WHEN role = 'customer' THEN 1 END) AS customer_count,
                   COUNT(CASE WHEN role = 'premium' THEN 1 END) AS premium_count,
                   COUNT(CASE WHEN created_at >= NOW() - INTERVAL '24 hours' THEN 1 END) AS new_users_24h
            FROM users
            """
        )
        stats = result.first or {}
        self.logger.info("User statistics retrieved", **stats)
        return stats

    def _validate_user_data(self, user_data: Dict[str, Any]) -> None:
        name = user_data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Name is required and must be a non-empty string")
        if not is_valid_email(user_data.get("email")):
            raise ValidationError("Valid email is required")
        if user_data.get("role") not in USER_ROLES:
            raise ValidationError(f"Role must be one of: {', '.join(USER_ROLES)}")

    async def _log_audit_event(self, event: str, user_id: Any, data: Dict[str, Any]) -> None:
        try:
            await self.database.query(
                """
                INSERT INTO audit_logs (event_type, user_id, data, created_at)
                VALUES ($1, $2, $3, NOW())
                """,
                [event, user_id, json.dumps(data, default=str)],
            )
            self.logger.debug("Audit event logged", audit_event=event, user_id=user_id)
        except Exception as e:
            # Audit logging never fails the business operation
            self.logger.error("Failed to log audit event", error=str(e), audit_event=event, user_id=user_id)

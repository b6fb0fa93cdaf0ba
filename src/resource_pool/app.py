"""Composition root: builds the pool, database manager and services."""

import os
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .config import Config
from .core.pool import ResourcePool
from .database.backend import QueryBackend, SimulatedBackend, SimulatedConnector
from .database.manager import DatabaseManager
from .logging import configure_logging, get_log_stats, get_logger
from .monitoring.metrics import PoolMetrics
from .services.notifications import NotificationService, NotificationTransport, SimulatedTransport
from .services.orders import OrderService
from .services.users import UserService

logger = get_logger(__name__)


@dataclass
class DemoStep:
    """Outcome of one demo operation."""
    name: str
    success: bool
    detail: str = ""


@dataclass
class DemoReport:
    steps: List[DemoStep] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for step in self.steps if step.success)

    @property
    def failed(self) -> int:
        return len(self.steps) - self.succeeded


class Application:
    """Owns every long-lived component and hands them to each other explicitly.

    Backends and transports default to the simulations; tests pass fakes.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        backend: Optional[QueryBackend] = None,
        transport: Optional[NotificationTransport] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or Config.load()
        self._rng = rng or random.Random()
        self._backend = backend
        self._transport = transport
        self.pool: Optional[ResourcePool] = None
        self.database: Optional[DatabaseManager] = None
        self.users: Optional[UserService] = None
        self.orders: Optional[OrderService] = None
        self.notifications: Optional[NotificationService] = None
        self.is_running = False

    def initialize(self) -> None:
        """Configure logging and wire up all components."""
        configure_logging(self.config.app)

        db_settings = self.config.database
        self.pool = ResourcePool.from_config(
            self.config.pool,
            connector=SimulatedConnector(host=db_settings.host, port=db_settings.port, database=db_settings.name),
            metrics=PoolMetrics(pool_name="database"),
            name="database",
        )
        self.pool.on("retry", lambda resource, attempt, error: logger.debug(
            "Retry scheduled", resource_id=resource.id, attempt=attempt, error=str(error)
        ))
        self.pool.on("acquire_timeout", lambda: logger.warning("Database pool exhausted"))

        backend = self._backend or SimulatedBackend.from_config(db_settings, rng=self._rng)
        self.database = DatabaseManager(self.pool, backend)
        self.users = UserService(self.database, self.config.users)
        self.orders = OrderService(self.database, self.config.orders)
        self.notifications = NotificationService(
            self._transport or SimulatedTransport(rng=self._rng),
            self.config.notifications,
            database=self.database,
        )

        self.config.set("app.start_time", datetime.now(timezone.utc).isoformat())
        self.config.set("app.process_id", os.getpid())
        self.is_running = True

        logger.info(
            "Application initialized",
            app=self.config.app.name,
            environment=self.config.app.environment,
            pool_capacity=self.pool.capacity,
        )

    async def start(self) -> None:
        if not self.is_running:
            self.initialize()
        await self.database.connect()

    async def shutdown(self) -> None:
        logger.info("Shutting down application")
        if self.database is not None:
            await self.database.disconnect()
        self.is_running = False
        logger.info("Application shutdown complete")

    async def __aenter__(self) -> "Application":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def run_demo(self) -> DemoReport:
        """Exercise every service once and record each outcome."""
        report = DemoReport()

        async def step(name: str, action: Callable[[], Awaitable[Any]], describe: Callable[[Any], str]) -> Any:
            try:
                result = await action()
            except Exception as e:
                report.steps.append(DemoStep(name, False, str(e)))
                return None
            report.steps.append(DemoStep(name, True, describe(result)))
            return result

        user = await step(
            "create user",
            lambda: self.users.create_user({"name": "John Doe", "email": "john@example.com", "role": "customer"}),
            lambda u: f"id={u.get('id')}",
        )
        if user is not None:
            await step(
                "update user",
                lambda: self.users.update_user(user["id"], {"role": "premium"}),
                lambda u: f"role={u['role']}",
            )
            await step("get user", lambda: self.users.get_user(user["id"]), lambda u: str(u))

        await step(
            "create order",
            lambda: self.orders.create_order({
                "user_id": 1,
                "items": [
                    {"product_id": 101, "quantity": 2, "price": 29.99},
                    {"product_id": 102, "quantity": 1, "price": 49.99},
                ],
            }),
            lambda o: f"id={o['id']} total={o['total']}",
        )
        await step("order statistics", self.orders.get_order_statistics, lambda s: str(s))

        await step(
            "send email",
            lambda: self.notifications.send_email("user@example.com", "Welcome!", "Welcome to our platform"),
            lambda r: r["message_id"],
        )
        await step(
            "send sms",
            lambda: self.notifications.send_sms("+1234567890", "Your order has been shipped"),
            lambda r: r["message_id"],
        )
        await step(
            "send push",
            lambda: self.notifications.send_push("user123", "New message", "You have a new message"),
            lambda r: r["message_id"],
        )

        logger.info("Demo completed", succeeded=report.succeeded, failed=report.failed)
        return report

    def statistics(self) -> Dict[str, Any]:
        """Statistics from every component."""
        return {
            "database": self.database.get_stats() if self.database else {},
            "notifications": self.notifications.get_statistics() if self.notifications else {},
            "logging": get_log_stats(),
        }

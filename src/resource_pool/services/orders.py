"""Order service: order lifecycle inside pool transactions."""

import math
from typing import Any, Dict, List, Optional

from ..config import OrderConfig
from ..core.pool import Resource
from ..database.manager import DatabaseManager
from ..exceptions import OrderError, ValidationError
from ..logging import get_logger


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class OrderService:
    """Creates, processes and cancels orders.

    Every multi-statement change runs in a single transaction; the queries
    inside it use the transaction's connection.
    """

    def __init__(self, database: DatabaseManager, settings: Optional[OrderConfig] = None):
        self.database = database
        self.settings = settings or OrderConfig()
        self.logger = get_logger(__name__).bind(service="OrderService")
        self.logger.info(
            "OrderService initialized",
            max_order_value=self.settings.max_order_value,
            tax_rate=self.settings.tax_rate,
            shipping_cost=self.settings.shipping_cost,
        )

    def calculate_totals(self, items: List[Dict[str, Any]]) -> Dict[str, float]:
        """Subtotal, tax, shipping and total for a list of items."""
        subtotal = sum(item["price"] * item["quantity"] for item in items)
        tax = subtotal * self.settings.tax_rate
        shipping = 0.0 if subtotal > self.settings.free_shipping_threshold else self.settings.shipping_cost
        return {
            "subtotal": round(subtotal, 2),
            "tax": round(tax, 2),
            "shipping": round(shipping, 2),
            "total": round(subtotal + tax + shipping, 2),
        }

    async def create_order(self, order_data: Dict[str, Any]) -> Dict[str, Any]:
        """Insert an order with its items and reserve inventory."""
        items = order_data.get("items") or []
        self.logger.info("Creating order", user_id=order_data.get("user_id"), item_count=len(items))

        try:
            self._validate_order_data(order_data)
            totals = self.calculate_totals(items)

            async def create(connection: Resource) -> Dict[str, Any]:
                result = await self.database.query(
                    """
                    INSERT INTO orders (user_id, total, tax, shipping, status, created_at, updated_at)
                    VALUES ($1, $2, $3, $4, 'pending', NOW(), NOW())
                    RETURNING id, user_id, total, tax, shipping, status, created_at
                    """,
                    [order_data["user_id"], totals["total"], totals["tax"], totals["shipping"]],
                    connection=connection,
                )
                order_id = result.first["id"] if result.first else None

                for item in items:
                    await self.database.query(
                        """
                        INSERT INTO order_items (order_id, product_id, quantity, price, created_at)
                        VALUES ($1, $2, $3, $4, NOW())
                        """,
                        [order_id, item["product_id"], item["quantity"], item["price"]],
                        connection=connection,
                    )

                for item in items:
                    inventory = await self.database.query(
                        """
                        UPDATE products
                        SET stock_quantity = stock_quantity - $1
                        WHERE id = $2 AND stock_quantity >= $1
                        """,
                        [item["quantity"], item["product_id"]],
                        connection=connection,
                    )
                    if inventory.row_count == 0:
                        raise OrderError(
                            f"Insufficient stock for product {item['product_id']}",
                            {"product_id": item["product_id"]},
                        )

                return {
                    "id": order_id,
                    "user_id": order_data["user_id"],
                    "status": "pending",
                    "items": [dict(item) for item in items],
                    **totals,
                }

            order = await self.database.transaction(create)

            self.logger.info(
                "Order created successfully",
                order_id=order["id"],
                user_id=order["user_id"],
                total=order["total"],
            )
            return order

        except Exception as e:
            self.logger.error("Failed to create order", error=str(e), user_id=order_data.get("user_id"))
            raise

    async def get_order(self, order_id: int) -> Optional[Dict[str, Any]]:
        self.logger.debug("Getting order by ID", order_id=order_id)

        result = await self.database.query(
            """
            SELECT o.id, o.user_id, o.total, o.tax, o.shipping, o.status, o.created_at, o.updated_at
            FROM orders o
            WHERE o.id = $1
            """,
            [order_id],
        )
        if not result.rows:
            self.logger.warning("Order not found", order_id=order_id)
            return None
        return result.first

    async def process_order(self, order_id: int) -> Dict[str, Any]:
        """Move a pending order through processing to completed."""
        self.logger.info("Processing order", order_id=order_id)

        try:
            order = await self.get_order(order_id)
            if order is None:
                raise OrderError("Order not found", {"order_id": order_id})
            if order.get("status") != "pending":
                raise OrderError(
                    f"Order cannot be processed. Current status: {order.get('status')}",
                    {"order_id": order_id},
                )

            async def process(connection: Resource) -> Dict[str, Any]:
                result = await self.database.query(
                    """
                    UPDATE orders SET status = 'processing', updated_at = NOW()
                    WHERE id = $1 AND status = 'pending'
                    RETURNING id, status
                    """,
                    [order_id],
                    connection=connection,
                )
                if result.row_count == 0:
                    raise OrderError("Order status update failed", {"order_id": order_id})

                await self.database.query(
                    """
                    UPDATE orders SET status = 'completed', updated_at = NOW()
                    WHERE id = $1
                    RETURNING id, status
                    """,
                    [order_id],
                    connection=connection,
                )
                return {**order, "status": "completed"}

            updated = await self.database.transaction(process)
            self.logger.info("Order processed successfully", order_id=order_id, status=updated["status"])
            return updated

        except Exception as e:
            self.logger.error("Failed to process order", error=str(e), order_id=order_id)
            raise

    async def cancel_order(self, order_id: int) -> Dict[str, Any]:
        """Cancel a pending or processing order and restore its inventory."""
        self.logger.info("Cancelling order", order_id=order_id)

        try:
            order = await self.get_order(order_id)
            if order is None:
                raise OrderError("Order not found", {"order_id": order_id})
            if order.get("status") in ("completed", "shipped"):
                raise OrderError("Cannot cancel completed or shipped order", {"order_id": order_id})

            async def cancel(connection: Resource) -> Dict[str, Any]:
                result = await self.database.query(
                    """
                    UPDATE orders SET status = 'cancelled', updated_at = NOW()
                    WHERE id = $1 AND status IN ('pending', 'processing')
                    RETURNING id, status
                    """,
                    [order_id],
                    connection=connection,
                )
                if result.row_count == 0:
                    raise OrderError("Order cancellation failed", {"order_id": order_id})

                items = await self.database.query(
                    "SELECT product_id, quantity FROM order_items WHERE order_id = $1",
                    [order_id],
                    connection=connection,
                )
                for item in items.rows:
                    await self.database.query(
                        "UPDATE products SET stock_quantity = stock_quantity + $1 WHERE id = $2",
                        [item.get("quantity"), item.get("product_id")],
                        connection=connection,
                    )
                return {**order, "status": "cancelled"}

            updated = await self.database.transaction(cancel)
            self.logger.info("Order cancelled successfully", order_id=order_id)
            return updated

        except Exception as e:
            self.logger.error("Failed to cancel order", error=str(e), order_id=order_id)
            raise

    async def get_orders_by_user(
        self,
        user_id: int,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
    ) -> Dict[str, Any]:
        self.logger.debug("Getting orders by user", user_id=user_id, page=page, limit=limit, status=status)
        offset = (page - 1) * limit

        query = "SELECT id, user_id, total, tax, shipping, status, created_at, updated_at FROM orders WHERE user_id = $1"
        params: List[Any] = [user_id]
        if status:
            query += " AND status = $2"
            params.append(status)
        query += f" ORDER BY created_at DESC LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}"
        result = await self.database.query(query, params + [limit, offset])

        count_query = "SELECT COUNT(*) AS total FROM orders WHERE user_id = $1" + (" AND status = $2" if status else "")
        count_result = await self.database.query(count_query, params)
        total = int(count_result.first["total"]) if count_result.first else 0

        return {
            "orders": result.rows,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if limit else 0,
            },
        }

    async def get_order_statistics(self) -> Dict[str, Any]:
        self.logger.debug("Getting order statistics")

        result = await self.database.query(
            """
            SELECT COUNT(*) AS total,
                   COUNT(CASE WHEN status = 'pending' THEN 1 END) AS pending_orders,
                   COUNT(CASE WHEN status = 'processing' THEN 1 END) AS processing_orders,
                   COUNT(CASE WHEN status = 'completed' THEN 1 END) AS completed_orders,
                   SUM(total) AS total_revenue,
                   AVG(total) AS average_order_value
            FROM orders
            WHERE status != 'cancelled'
            """
        )
        stats = result.first or {}
        self.logger.info("Order statistics retrieved", **stats)
        return stats

    def _validate_order_data(self, order_data: Dict[str, Any]) -> None:
        user_id = order_data.get("user_id")
        if not _is_int(user_id) or user_id <= 0:
            raise ValidationError("Valid user ID is required")

        items = order_data.get("items")
        if not isinstance(items, list) or not items:
            raise ValidationError("Order must contain at least one item")

        for item in items:
            if not _is_int(item.get("product_id")) or item["product_id"] <= 0:
                raise ValidationError("Valid product ID is required for each item")
            if not _is_int(item.get("quantity")) or item["quantity"] <= 0:
                raise ValidationError("Valid quantity is required for each item")
            if not _is_number(item.get("price")) or item["price"] < 0:
                raise ValidationError("Valid price is required for each item")

        subtotal = sum(item["price"] * item["quantity"] for item in items)
        if subtotal > self.settings.max_order_value:
            raise ValidationError(
                f"Order total exceeds maximum allowed value of ${self.settings.max_order_value}",
                {"subtotal": subtotal},
            )

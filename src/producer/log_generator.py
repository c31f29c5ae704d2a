"""
Realistic application log generator.

Simulates a fleet of microservices with weighted service, level and
environment distributions. Error and fatal records carry a typed error with
a fake stack trace; most records carry an HTTP request and payment-service
records often carry a business transaction. Timestamps fall on the base
date, skewed towards business hours.
"""

from __future__ import annotations

import random
from datetime import datetime, timezone
from typing import Any

from faker import Faker

from src.models import CATEGORIES, LogRecord

# ---------------------------------------------------------------------------
# Static catalogs
# ---------------------------------------------------------------------------

SERVICE_WEIGHTS: dict[str, float] = {
    "api-gateway": 25,
    "auth-service": 15,
    "payment-service": 10,
    "user-service": 12,
    "notification-service": 8,
    "order-service": 10,
    "inventory-service": 8,
    "analytics-service": 7,
    "search-service": 5,
}

LEVEL_WEIGHTS: dict[str, float] = {
    "trace": 5,
    "debug": 15,
    "info": 60,
    "warn": 15,
    "error": 4,
    "fatal": 1,
}

ENVIRONMENT_WEIGHTS: dict[str, float] = {
    "production": 70,
    "staging": 20,
    "development": 10,
}

REGIONS: list[str] = ["us-east-1", "us-west-2", "eu-west-1", "ap-south-1"]

HTTP_METHODS: list[str] = ["GET", "POST", "PUT", "DELETE", "PATCH"]

PAYMENT_METHODS: list[str] = ["credit_card", "debit_card", "paypal", "bank_transfer"]

CURRENCIES: list[str] = ["USD", "EUR", "GBP", "BRL", "INR"]

MESSAGES: dict[str, list[str]] = {
    "trace": [
        "Entering method processRequest in {service}",
        "Executing query on database",
        "Cache lookup for key",
    ],
    "debug": [
        "Processing request with parameters",
        "Database query executed successfully",
        "Cache hit for key",
    ],
    "info": [
        "Request processed successfully",
        "User authenticated successfully",
        "Data synchronized with external service",
        "Batch job completed",
    ],
    "warn": [
        "High memory usage detected",
        "Slow query detected",
        "Deprecated API endpoint used",
        "Rate limit approaching threshold",
    ],
    "error": [
        "Failed to process payment",
        "Database connection timeout",
        "External service unavailable",
        "Validation failed for user input",
    ],
    "fatal": [
        "Critical system failure",
        "Database corruption detected",
        "Out of memory error",
        "Unrecoverable error in core service",
    ],
}

ERROR_MESSAGES: dict[str, list[str]] = {
    "TimeoutException": ["Connection timeout", "Request timeout after 30s"],
    "DatabaseException": ["Query execution failed", "Connection pool exhausted"],
    "ValidationException": ["Invalid input data", "Missing required field"],
    "AuthenticationException": ["Invalid credentials", "Token expired"],
    "PaymentGatewayException": ["Payment provider timeout", "Insufficient funds"],
    "NetworkException": ["Network unreachable", "Connection refused"],
    "ServiceUnavailableException": ["Service temporarily unavailable", "Circuit breaker open"],
}

API_PATHS: dict[str, list[str]] = {
    "api-gateway": ["/api/v1/health", "/api/v1/users", "/api/v1/orders"],
    "auth-service": ["/auth/login", "/auth/logout", "/auth/refresh"],
    "payment-service": ["/payments/process", "/payments/refund", "/payments/status"],
    "user-service": ["/users/profile", "/users/settings", "/users/delete"],
    "order-service": ["/orders/create", "/orders/update", "/orders/cancel"],
}


class LogGenerator:
    """
    Generates synthetic log records for a given day.

    Pass ``seed`` for reproducible output; the same seed drives both the
    weighted choices and Faker.
    """

    def __init__(self, seed: int | None = None) -> None:
        self._rng = random.Random(seed)
        self._faker = Faker()
        if seed is not None:
            self._faker.seed_instance(seed)
        self._services = list(SERVICE_WEIGHTS.keys())
        self._service_weights = list(SERVICE_WEIGHTS.values())
        self._levels = list(LEVEL_WEIGHTS.keys())
        self._level_weights = list(LEVEL_WEIGHTS.values())
        self._environments = list(ENVIRONMENT_WEIGHTS.keys())
        self._environment_weights = list(ENVIRONMENT_WEIGHTS.values())

    def __call__(self, index: int, base_date: datetime) -> LogRecord:
        return self.generate_log(base_date)

    def generate_log(self, base_date: datetime) -> LogRecord:
        """Generate one log record with a timestamp on ``base_date``."""
        rng = self._rng
        fake = self._faker

        service: str = rng.choices(self._services, self._service_weights, k=1)[0]
        level: str = rng.choices(self._levels, self._level_weights, k=1)[0]
        environment: str = rng.choices(self._environments, self._environment_weights, k=1)[0]

        record: dict[str, Any] = {
            "id": fake.uuid4(),
            "timestamp": self._timestamp(base_date),
            "service": {
                "name": service,
                "version": f"{rng.randint(1, 3)}.{rng.randint(0, 9)}.{rng.randint(0, 20)}",
                "environment": environment,
                "instance_id": f"i-{fake.pystr(min_chars=10, max_chars=10).lower()}",
                "host": f"ip-{rng.randint(10, 172)}-{rng.randint(0, 255)}-"
                        f"{rng.randint(0, 255)}-{rng.randint(0, 255)}.ec2.internal",
                "region": rng.choice(REGIONS),
            },
            "level": level,
            "category": rng.choice(CATEGORIES),
            "message": rng.choice(MESSAGES[level]).format(service=service),
            "metrics": {
                "cpu_usage": round(rng.random() * 100, 2),
                "memory_mb": rng.randint(128, 2048),
                "response_time_ms": rng.randint(10, 5000),
                "db_query_time_ms": rng.randint(5, 500),
            },
            "tags": self._tags(service, level),
            "geo": {
                "country": fake.country_code(),
                "city": fake.city(),
                "location": {
                    "lat": float(fake.latitude()),
                    "lon": float(fake.longitude()),
                },
            },
        }

        if level in ("error", "fatal"):
            error_type = rng.choice(list(ERROR_MESSAGES))
            record["error"] = {
                "type": error_type,
                "message": rng.choice(ERROR_MESSAGES[error_type]),
                "stack_trace": self._stack_trace(service, error_type),
                "code": f"{error_type[:2].upper()}_{rng.randint(1000, 9999)}",
            }

        if rng.random() < 0.8:
            record["request"] = {
                "id": f"req-{fake.pystr(min_chars=10, max_chars=10).lower()}",
                "method": rng.choice(HTTP_METHODS),
                "path": rng.choice(API_PATHS.get(service, ["/api/v1/generic"])),
                "user_id": f"user-{fake.pystr(min_chars=8, max_chars=8).lower()}",
                "ip": fake.ipv4(),
                "user_agent": fake.user_agent(),
                "duration_ms": rng.randint(50, 10000),
            }

        if service == "payment-service" and rng.random() < 0.7:
            record["business"] = {
                "transaction_id": f"txn-{fake.pystr(min_chars=12, max_chars=12).lower()}",
                "amount": round(rng.random() * 1000, 2),
                "currency": rng.choice(CURRENCIES),
                "payment_method": rng.choice(PAYMENT_METHODS),
            }

        return record

    def _timestamp(self, base_date: datetime) -> str:
        """Random time on the base date; 60% of records land between 10:00 and 18:00."""
        rng = self._rng
        hour = rng.randint(10, 17) if rng.random() < 0.6 else rng.randint(0, 23)
        ts = datetime(
            base_date.year, base_date.month, base_date.day,
            hour, rng.randint(0, 59), rng.randint(0, 59), rng.randint(0, 999) * 1000,
            tzinfo=timezone.utc,
        )
        return ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def _tags(self, service: str, level: str) -> list[str]:
        tags = [service]
        if level in ("error", "fatal"):
            tags.append("critical")
        if self._rng.random() < 0.3:
            tags.append(self._rng.choice(["monitoring", "alert", "performance"]))
        return tags

    def _stack_trace(self, service: str, error_type: str) -> str:
        rng = self._rng
        return (
            f"{error_type}: Error in {service}\n"
            f"    at com.example.{service}.Controller.handleRequest(Controller.java:{rng.randint(10, 500)})\n"
            f"    at com.example.{service}.Service.process(Service.java:{rng.randint(10, 500)})\n"
            f"    at com.example.common.Handler.execute(Handler.java:{rng.randint(10, 500)})"
        )

"""Shared test fixtures for the notification core."""
import asyncio
import inspect
from datetime import datetime, timedelta

import pytest

from channels.sender import NotificationChannelSender
from channels.transports import LoggingTransport
from config.settings import BrokerConfig, BulkConfig, SchedulerConfig, Settings
from database.repositories import (
    InMemoryDeviceTokenRepository, InMemoryRecipientRepository, InMemoryTemplateRepository,
)
from database.store_memory import InMemoryNotificationStore
from job_queue.broker import InMemoryBroker
from models.schemas import ChannelType, NotificationTemplate, Recipient


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01):
    """Poll ``predicate`` (sync or async) until it is truthy or the timeout passes."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = predicate()
        if inspect.isawaitable(result):
            result = await result
        if result:
            return result
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def eventually():
    return wait_until


@pytest.fixture
def broker_config() -> BrokerConfig:
    return BrokerConfig(
        backend="memory",
        reconnect_initial_delay=0.01,
        reconnect_max_delay=0.05,
        health_check_interval=0.05,
        delayed_poll_interval=0.01,
        poll_block_ms=20,
    )


@pytest.fixture
def settings(broker_config) -> Settings:
    return Settings(
        broker=broker_config,
        scheduler=SchedulerConfig(sweep_interval=0.05, retry_backoff_base=0),
        bulk=BulkConfig(batch_size=100, batch_interval_ms=0),
    )


@pytest.fixture
def store():
    return InMemoryNotificationStore()


@pytest.fixture
async def broker(broker_config):
    b = InMemoryBroker(broker_config)
    await b.connect()
    yield b
    await b.close()


@pytest.fixture
def transports():
    return {ch: LoggingTransport(ch) for ch in ChannelType}


@pytest.fixture
def templates():
    return InMemoryTemplateRepository([
        NotificationTemplate(name="welcome", subject="Welcome {{name}}",
                             content="<p>Hi {{name}}, your id is {{id}}</p>"),
        NotificationTemplate(name="newsletter_template", subject="{{campaignName}} news",
                             content="<h1>{{campaignName}}</h1><p>{{date}}</p>"),
    ])


@pytest.fixture
def sender(settings, store, templates, transports) -> NotificationChannelSender:
    return NotificationChannelSender.from_settings(settings, store, templates=templates,
                                                  transports=transports)


def make_recipients(count: int, verified: bool = True) -> list[Recipient]:
    created = datetime(2024, 1, 1)
    return [
        Recipient(
            id=f"u{i:04d}",
            email=f"user{i}@example.com",
            phone_number=f"+1555000{i:04d}",
            name=f"User {i}",
            is_verified=verified,
            created_at=created + timedelta(days=i),
        )
        for i in range(count)
    ]


@pytest.fixture
def recipients():
    return InMemoryRecipientRepository(make_recipients(5))


@pytest.fixture
def device_tokens():
    return InMemoryDeviceTokenRepository()

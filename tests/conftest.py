from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional
import uuid

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from contentpilot.billing.gateway import ChargeResult
from contentpilot.channels.base import ChannelPublishResult
from contentpilot.domain.enums import BillingCycle, PostStatus, Status, VideoType
from contentpilot.storage.db import Base, load_models
from contentpilot.storage.models import Channel, Post, PricingPlan, User


T0 = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)


class FakeRedis:
    def __init__(self) -> None:
        self._store: Dict[str, str] = {}

    def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):
        del ex
        if nx and key in self._store:
            return False
        self._store[key] = str(value)
        return True

    def get(self, key: str):
        return self._store.get(key)

    def delete(self, key: str):
        return 1 if self._store.pop(key, None) is not None else 0

    def eval(self, script: str, numkeys: int, key: str, token: str):
        del script, numkeys
        if self._store.get(key) == token:
            self._store.pop(key, None)
            return 1
        return 0


class FakePaymentGateway:
    """Returns queued outcomes in order; an exception instance is raised, anything else charges."""

    def __init__(self, *outcomes: object) -> None:
        self.calls: List[dict] = []
        self._outcomes = list(outcomes)

    def queue(self, *outcomes: object) -> None:
        self._outcomes.extend(outcomes)

    @property
    def idempotency_keys(self) -> List[str]:
        return [call["idempotency_key"] for call in self.calls]

    def charge(self, **kwargs) -> ChargeResult:
        self.calls.append(kwargs)
        outcome = self._outcomes.pop(0) if self._outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        return ChargeResult(transaction_id=f"txn-{len(self.calls)}", payload={"status": "paid"})


class FakeChannelPublisher:
    def __init__(self, platform: str, *outcomes: object) -> None:
        self.platform = platform
        self.calls: List[tuple[str, str]] = []
        self._outcomes = list(outcomes)

    def queue(self, *outcomes: object) -> None:
        self._outcomes.extend(outcomes)

    def publish(self, post: Post, channel: Channel) -> ChannelPublishResult:
        self.calls.append((post.id, channel.id))
        outcome = self._outcomes.pop(0) if self._outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        return ChannelPublishResult(
            platform=self.platform,
            external_id=f"{self.platform}-{len(self.calls)}",
            message=f"{self.platform} published",
        )


def build_session_factory() -> sessionmaker:
    load_models()
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def build_file_session_factory(path: Path) -> sessionmaker:
    """File-backed database so concurrent threads get their own connections."""

    load_models()
    engine = create_engine(
        f"sqlite+pysqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def create_plan(
    session,
    *,
    name: str = "pro",
    billing_cycle: BillingCycle = BillingCycle.MONTHLY,
    price: int = 200000,
    credit: int = 10,
    capacity: int = 100,
    status: Status = Status.ACTIVE,
) -> PricingPlan:
    plan = PricingPlan(
        id=str(uuid.uuid4()),
        name=name,
        billing_cycle=billing_cycle,
        price=price,
        currency="VND",
        credit=credit,
        capacity=capacity,
        features=[],
        status=status,
    )
    session.add(plan)
    session.commit()
    return plan


def create_user(
    session,
    *,
    email: Optional[str] = None,
    credit: int = 0,
    credit_used: int = 0,
    capacity: int = 0,
    capacity_used: int = 0,
) -> User:
    user = User(
        id=str(uuid.uuid4()),
        email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
        credit=credit,
        credit_used=credit_used,
        capacity=capacity,
        capacity_used=capacity_used,
    )
    session.add(user)
    session.commit()
    return user


def create_channel(
    session,
    *,
    user_id: str,
    platform: str,
    access_token: Optional[str] = "access-token",
    expires_at: Optional[datetime] = None,
    status: Status = Status.ACTIVE,
) -> Channel:
    channel = Channel(
        id=str(uuid.uuid4()),
        user_id=user_id,
        platform=platform,
        channel_id=f"{platform}-page-{uuid.uuid4().hex[:6]}",
        channel_name=f"{platform} channel",
        access_token=access_token,
        expires_at=expires_at,
        status=status,
    )
    session.add(channel)
    session.commit()
    return channel


def create_post(
    session,
    *,
    user_id: str,
    title: str = "Launch day",
    video_url: Optional[str] = "https://cdn.example.com/videos/launch.mp4",
    process_status: PostStatus = PostStatus.SCHEDULED,
    scheduled_at: Optional[datetime] = T0,
    channel_id: Optional[str] = None,
    video_type: Optional[VideoType] = VideoType.VIDEO,
    tags: Optional[List[str]] = None,
) -> Post:
    post = Post(
        id=str(uuid.uuid4()),
        user_id=user_id,
        channel_id=channel_id,
        title=title,
        description="Behind the scenes of the launch.",
        video_url=video_url,
        video_type=video_type,
        process_status=process_status,
        scheduled_at=scheduled_at,
        tags=list(tags or []),
    )
    session.add(post)
    session.commit()
    return post

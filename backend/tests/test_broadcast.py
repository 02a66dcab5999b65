import asyncio

from conftest import RecordingSubscriber
from core.cache import ResponseCache
from core.effects import Broadcast, InvalidateCache, Notify
from core.security import BranchScope
from models.notification import Notification, NotificationType, RoleTarget
from services.effects import EffectRunner
from utils.broadcast import BroadcastBus

MAIN = BranchScope("t1", "main")
ANNEX = BranchScope("t1", "annex")


def test_publish_reaches_only_the_branch_group():
    bus = BroadcastBus()
    main, annex = RecordingSubscriber(), RecordingSubscriber()
    bus.subscribe(MAIN, main)
    bus.subscribe(ANNEX, annex)

    delivered = asyncio.run(bus.publish(MAIN, "order-updated", {"id": 1}))

    assert delivered == 1
    assert main.messages == [{"event": "order-updated", "data": {"id": 1}}]
    assert annex.messages == []


def test_failed_subscriber_is_dropped():
    bus = BroadcastBus()
    healthy, broken = RecordingSubscriber(), RecordingSubscriber(fail=True)
    bus.subscribe(MAIN, healthy)
    bus.subscribe(MAIN, broken)

    assert asyncio.run(bus.publish(MAIN, "ping", {})) == 1
    assert bus.subscriber_count(MAIN) == 1
    assert bus.subscriber_count() == 1


def test_unsubscribe_empties_group():
    bus = BroadcastBus()
    listener = RecordingSubscriber()
    bus.subscribe(MAIN, listener)
    bus.unsubscribe(MAIN, listener)
    assert bus.subscriber_count(MAIN) == 0
    assert asyncio.run(bus.publish(MAIN, "ping", {})) == 0


def test_runner_keeps_going_after_a_failed_effect(db_session):
    bus = BroadcastBus()
    listener = RecordingSubscriber()
    bus.subscribe(MAIN, listener)
    cache = ResponseCache()
    cache.set("dashboard:t1:main:/stats:{}", {})

    effects = [
        InvalidateCache(),
        "not an effect",
        Broadcast(MAIN, "order-updated", {"id": 7}),
        Notify(MAIN, NotificationType.ORDER_READY, "Order Ready", "ORD-7 is ready", RoleTarget.WAITER,
               reference_id="7"),
        Notify(MAIN, NotificationType.ORDER_READY, "Order Ready", "ORD-7 is ready", RoleTarget.WAITER,
               reference_id="7"),
    ]
    asyncio.run(EffectRunner(db_session, bus, cache).run(effects))

    assert len(cache) == 0
    assert listener.events == ["order-updated", "new-notification"]
    assert db_session.query(Notification).count() == 1

"""
テスト共通のスタブと初期化ヘルパー。
Shared stubs and setup helpers for the planner tests.
"""
import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("REDIS_CONNECT_ON_IMPORT", "false")
os.environ.setdefault("COOKIE_SECURE", "false")

from sagascout import event_bus, inflight, redis_client  # noqa: E402
from sagascout import models  # noqa: E402,F401
from sagascout.database import Base, engine  # noqa: E402


class FakeRedis:
    """
    Redis `get/set/setex/delete` の最小挙動を再現するテスト用スタブ。
    Minimal Redis stub emulating `get/set/setex/delete`.
    """
    def __init__(self):
        self.store = {}

    def setex(self, key, _ttl, value):
        self.store[key] = value

    def set(self, key, value):
        self.store[key] = value

    def get(self, key):
        return self.store.get(key)

    def delete(self, *keys):
        for key in keys:
            self.store.pop(key, None)


def install_fake_redis():
    fake = FakeRedis()
    redis_client.redis_client = fake
    redis_client._memory_store.clear()
    return fake


def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def reset_runtime():
    """
    Redis・DB・イベントバス・実行中レジストリを初期状態に戻す
    Reset Redis, database, event bus and in-flight registry between tests.
    """
    fake = install_fake_redis()
    reset_database()
    event_bus.bus = event_bus.EventBus()
    inflight._inflight.clear()
    return fake


def destinations_reply(*titles, commentary="Here are some ideas you might enjoy:"):
    items = [
        {
            "title": title,
            "description": f"A trip to {title}",
            "image": "",
            "matchPercentage": "88%",
            "rating": "4.6",
            "priceRange": "$150-250/day",
        }
        for title in titles
    ]
    return f"{commentary}\n{json.dumps(items)}\nEnjoy planning!"


def cities_reply(*cities):
    return json.dumps([{"name": name, "description": "fits", "daysToSpend": days} for name, days in cities])


def city_plan_reply(city, days, cost="$300"):
    plan = {
        "days": [
            {
                "date": "2030-01-01",
                "city": city,
                "activities": [
                    {
                        "time": "09:00",
                        "title": f"Morning walk in {city}",
                        "duration": "2 hours",
                        "location": f"Old Town, {city}",
                        "description": "Stroll",
                        "type": "attraction",
                        "lat": "35.0",
                        "long": "135.7",
                    },
                    {
                        "time": "18:30",
                        "title": "Dinner",
                        "duration": "90 min",
                        "location": f"Market Street, {city}",
                        "type": "meal",
                    },
                    {
                        "time": "21:00",
                        "title": "Some hotel",
                        "duration": "12h",
                        "location": "Hotel",
                        "type": "accommodation",
                    },
                ],
            }
            for _ in range(days)
        ],
        "summary": f"Visit {city}",
        "totalActivities": 3 * days,
        "estimatedCost": cost,
    }
    return "```json\n" + json.dumps(plan) + "\n```"


def stored_itinerary(dates=("2023-01-10", "2023-01-11", "2023-01-12")):
    return {
        "days": [
            {
                "date": day,
                "city": "Kyoto",
                "activities": [
                    {
                        "time": "10:00",
                        "title": f"Temple visit {index}",
                        "duration": "2h",
                        "location": "Higashiyama, Kyoto",
                        "type": "attraction",
                        "lat": 34.99,
                        "long": 135.78,
                    }
                ],
            }
            for index, day in enumerate(dates)
        ],
        "summary": "Three days in Kyoto",
        "totalActivities": len(dates),
        "estimatedCost": "$900",
    }

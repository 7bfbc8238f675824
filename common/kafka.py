from confluent_kafka import Producer, Consumer
from common.settings import settings

def get_consumer(group_id: str, topics: list[str], bootstrap: str = None):
    c = Consumer({
        "bootstrap.servers": bootstrap or settings.kafka_bootstrap,
        "group.id": group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": False,
    })
    c.subscribe(topics)
    return c

def get_producer(bootstrap: str = None):
    return Producer({"bootstrap.servers": bootstrap or settings.kafka_bootstrap, "enable.idempotence": True})

from datetime import date, timedelta
from db import init_db, get_session
from models import User, DeliveryRequest, SendRequest
import random

SIZES = ["small", "medium", "large", None]


def seed(deliverers=5, senders=15, routes=3):
    """Create deliverers with open routes and senders with parcels on the same routes."""
    init_db()
    session = get_session()
    deliverer_users = [User(name=f"deliverer{i}") for i in range(1, deliverers + 1)]
    sender_users = [User(name=f"sender{i}") for i in range(1, senders + 1)]
    session.add_all(deliverer_users + sender_users)
    session.commit()

    start = date.today()
    for i, u in enumerate(deliverer_users):
        origin = i % routes + 1
        session.add(DeliveryRequest(
            user_id=u.id,
            from_location_id=origin,
            to_location_id=origin + 100,
            from_date=start,
            to_date=start + timedelta(days=7),
            size_type=random.choice(SIZES),
            description=f"Route {origin} -> {origin + 100}",
        ))
    session.commit()

    for i, u in enumerate(sender_users):
        origin = i % routes + 1
        day = start + timedelta(days=random.randint(0, 5))
        session.add(SendRequest(
            user_id=u.id,
            from_location_id=origin,
            to_location_id=origin + 100,
            from_date=day,
            to_date=day + timedelta(days=2),
            size_type=random.choice(SIZES),
            description=f"Parcel from {u.name}",
        ))
    session.commit()
    session.close()
    print("Seeded sample data")


if __name__ == "__main__":
    seed()

from getpass import getpass

from farmmarket.database import Base, SessionLocal, engine
from farmmarket.models import Role
from farmmarket.security import hash_password
from farmmarket.storage import Storage


def prompt_role() -> Role:
    choices = ", ".join(role.value for role in Role)
    while True:
        value = input(f"Role ({choices}): ").strip().lower()
        try:
            return Role(value)
        except ValueError:
            print(f"Unknown role '{value}'")


def create_user(db=None):
    Base.metadata.create_all(bind=engine)
    db = db or SessionLocal()
    storage = Storage(db)

    try:
        email = input("Email: ")
        username = input("Username: ")
        name = input("Name: ")
        role = prompt_role()
        password = getpass("Password: ")

        if storage.get_user_by_username(username) or storage.get_user_by_email(email):
            print("A user with that username or email already exists")
            return None

        with storage.transaction():
            user = storage.create_user(
                email=email,
                username=username,
                name=name,
                role=role,
                hashed_password=hash_password(password),
            )

        print(f"Created {role.value} account '{user.username}' (id {user.id})")
        return user
    finally:
        db.close()


if __name__ == "__main__":
    create_user()

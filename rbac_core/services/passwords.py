"""bcrypt password hashing."""
import bcrypt

# bcrypt only reads the first 72 bytes and rejects anything longer
MAX_PASSWORD_BYTES = 72


def password_too_long(password: str) -> bool:
    return len(password.encode()) > MAX_PASSWORD_BYTES


def hash_password(password: str, rounds: int = 12) -> str:
    """Raises ValueError for a password over MAX_PASSWORD_BYTES; callers check password_too_long first."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=rounds)).decode()


def verify_password(password: str, password_hash: str) -> bool:
    """False for a wrong password or a missing/garbled hash."""
    if not password_hash or password_too_long(password):
        return False
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        return False

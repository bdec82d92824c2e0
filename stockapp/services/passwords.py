import secrets
import string

SPECIAL_CHARACTERS = "!@#$%^&*"
MIN_LENGTH = 8


def generate_temporary_password(length=12):
    """Generate a one-time password with at least one character of each class."""
    length = max(int(length or 0), MIN_LENGTH)

    uppercase = string.ascii_uppercase
    lowercase = string.ascii_lowercase
    digits = string.digits

    password_chars = [
        secrets.choice(uppercase),
        secrets.choice(lowercase),
        secrets.choice(digits),
        secrets.choice(SPECIAL_CHARACTERS),
    ]

    all_chars = uppercase + lowercase + digits + SPECIAL_CHARACTERS
    password_chars.extend(secrets.choice(all_chars) for _ in range(length - 4))
    secrets.SystemRandom().shuffle(password_chars)

    return "".join(password_chars)

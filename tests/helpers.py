from hashed_potato import config

# Lowest allowed cost keeps the suite fast
FAST_ITERATIONS = config.PBKDF2_MIN_ITERATIONS

PASSPHRASE = "correct horse battery staple"


def account_fields(**overrides):
    fields = {"nm": "Bank", "it": "B", "ct": "finance", "sm": "desc", "st": "active"}
    fields.update(overrides)
    return fields

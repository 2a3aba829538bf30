"""Story engine services.

Services are Discord-agnostic: they talk to the database through the CRUD
operations and to Discord through the ``MessagingPort`` protocol.
"""

"""Employee lifecycle sagas with identity provider compensation and an idempotent audit trail."""

__version__ = "0.1.0"

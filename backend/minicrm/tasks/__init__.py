"""Queue task handlers. Importing this package registers them."""

from minicrm.tasks import ingestion, campaigns, delivery  # noqa: F401

import logging


class BaseService:
    """Common base for pipeline services."""

    @property
    def logger(self) -> logging.Logger:
        return logging.getLogger(type(self).__module__)

    async def close(self):
        """Release any held resources. Services without resources keep this a no-op."""
        return None

from __future__ import annotations

import logging

from flask import Flask, jsonify

from .errors import PoolError

logger = logging.getLogger(__name__)


def register_error_handlers(app: Flask) -> None:
    """Map engine errors to JSON bodies with their transport status code."""

    @app.errorhandler(PoolError)
    def _handle_pool_error(error: PoolError):
        status = error.http_status
        if status >= 500:
            logger.error(f"Pool operation failed: {error.message}",
                         extra={'returncode': getattr(error, 'returncode', None)})
        return jsonify(error.to_dict()), status

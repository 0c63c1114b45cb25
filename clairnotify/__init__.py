"""Vulnerability notification creation and delivery over webhooks, AMQP and STOMP, with WSGI auth and compression middleware."""

__version__ = "0.1.0"
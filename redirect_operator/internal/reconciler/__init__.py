"""Reconciliation of Redirects into Ingresses, plus the driver that schedules it."""

from .action import Action
from .controller import Context, reconcile
from .driver import Controller

__all__ = ['Action', 'Context', 'Controller', 'reconcile']

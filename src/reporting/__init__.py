"""Run reporting."""

from reporting.report import SetupReport

__all__ = ['SetupReport']

"""Run reports."""

from reporting.report import RunReport, UnitRecord

__all__ = ['RunReport', 'UnitRecord']

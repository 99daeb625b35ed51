"""
VolumeScaler Controller.

Reconciliation engine, автоматически увеличивающий PersistentVolumeClaim
при превышении порога utilization согласно VolumeScaler policy.
"""

__version__ = "0.1.0"

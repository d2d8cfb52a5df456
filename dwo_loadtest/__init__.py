"""
DevWorkspace Operator load testing engine
Creates DevWorkspaces at scale, polls them to a terminal phase and checks
operator/etcd resource usage against pass/fail thresholds
"""

__version__ = "0.1.0"

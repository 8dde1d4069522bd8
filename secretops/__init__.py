"""SecretOps - secret lifecycle management for Kubernetes workloads."""

__version__ = "0.1.0"
__author__ = "BMI Health Tracker Team"

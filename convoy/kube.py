#!/usr/bin/env python3
"""
Kubernetes client construction.

An explicit kubeconfig path wins; otherwise the in-cluster service account
is used, falling back to the default kubeconfig for local development.
"""

import logging
from typing import Optional

from kubernetes import client, config

logger = logging.getLogger(__name__)


def load_kube_config(kubeconfig: Optional[str] = None) -> None:
    """Load cluster credentials into the kubernetes client configuration."""
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        logger.info(f"Loaded kubeconfig {kubeconfig}")
        return

    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded default kubeconfig")


def build_core_api(kubeconfig: Optional[str] = None) -> client.CoreV1Api:
    load_kube_config(kubeconfig)
    return client.CoreV1Api()

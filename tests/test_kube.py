#!/usr/bin/env python3
"""Unit tests for Kubernetes client construction."""

from unittest.mock import patch

import pytest
from kubernetes.config import ConfigException

from convoy.kube import build_core_api, load_kube_config

pytestmark = pytest.mark.unit


@patch("convoy.kube.config")
def test_explicit_kubeconfig(mock_config):
    load_kube_config("/tmp/kubeconfig")

    mock_config.load_kube_config.assert_called_once_with(config_file="/tmp/kubeconfig")
    mock_config.load_incluster_config.assert_not_called()


@patch("convoy.kube.config")
def test_in_cluster_preferred(mock_config):
    load_kube_config()

    mock_config.load_incluster_config.assert_called_once_with()
    mock_config.load_kube_config.assert_not_called()


@patch("convoy.kube.config")
def test_falls_back_to_default_kubeconfig(mock_config):
    mock_config.ConfigException = ConfigException
    mock_config.load_incluster_config.side_effect = ConfigException("not in a cluster")

    load_kube_config()

    mock_config.load_kube_config.assert_called_once_with()


@patch("convoy.kube.client")
@patch("convoy.kube.config")
def test_build_core_api(mock_config, mock_client):
    api = build_core_api("/tmp/kubeconfig")

    assert api is mock_client.CoreV1Api.return_value

"""Relay core: conversion, dispatch, per-direction pipelines and orchestration."""

from bridgerelay.relay.bridge import BridgeRelay
from bridgerelay.relay.conversion import AmountConverter
from bridgerelay.relay.direction import DirectionPipeline
from bridgerelay.relay.dispatcher import DispatchOutcome, ReleaseDispatcher
from bridgerelay.relay.reconcile import AcknowledgementReconciler, ReconcileReport

__all__ = [
    "AcknowledgementReconciler",
    "AmountConverter",
    "BridgeRelay",
    "DirectionPipeline",
    "DispatchOutcome",
    "ReconcileReport",
    "ReleaseDispatcher",
]

"""Integrations and background services"""

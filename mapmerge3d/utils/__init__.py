"""Logging, platform and resource helpers"""

"""
Configuration Module
====================
YAML defaults and environment overrides for SessionConfig.
"""

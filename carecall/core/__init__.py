"""Core configuration and error types"""

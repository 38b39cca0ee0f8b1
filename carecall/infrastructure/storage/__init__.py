"""Durable store and lease store implementations"""

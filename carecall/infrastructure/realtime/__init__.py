"""Realtime AI provider bridge"""

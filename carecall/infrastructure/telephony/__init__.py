"""Carrier (Twilio) adapters"""

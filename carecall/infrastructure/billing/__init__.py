"""Billing collaborator adapters"""

"""Provider and storage interfaces"""

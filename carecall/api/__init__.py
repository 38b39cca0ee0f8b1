"""HTTP and WebSocket API"""

"""
Telemetry: read-only HTTP view (FastAPI) of the fused pose, yaw lock and last drive command.
"""

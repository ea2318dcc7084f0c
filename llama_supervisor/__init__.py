"""
llama-supervisor

Local supervisor for llama.cpp's llama-server: VRAM-aware start/stop,
watchdog restarts, chat/vision/coder model swaps, an on-demand vision
server and resumable model downloads.
"""

__version__ = "1.0.0"

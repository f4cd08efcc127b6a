# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Integration tests driving the Engine end to end against a scripted invoker."""

# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# pixgate/__init__.py

__version__ = "0.1.0"

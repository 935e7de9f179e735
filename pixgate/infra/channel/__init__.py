# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/channel/__init__.py

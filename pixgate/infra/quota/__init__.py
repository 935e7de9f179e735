# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/quota/__init__.py

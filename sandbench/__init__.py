# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""sandbench - Reverse SSH tunnel benchmark service and load generator."""

__version__ = "0.1.0"

# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Routing domain models and services."""

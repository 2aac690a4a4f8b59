"""Test configuration before everything runs."""

from __future__ import annotations

import warnings

from zarr.errors import UnstableSpecificationWarning

# Consolidated metadata and string dtypes have no Zarr V3 specification yet
warnings.filterwarnings("ignore", category=UnstableSpecificationWarning)

from __future__ import annotations

from typing import Literal

# Packaging overwrites this file so production artifacts bake in the build flavor.
# Local development defaults to "dev"; simulated sensor backends are refused in "prod".
BUILD_FLAVOR: Literal["prod", "dev", "test"] = "dev"

"""All collection steps, in registry order."""

from collector.steps import (
    app_engine,
    cloud_asset,
    functions,
    iam,
    resource_manager,
    storage,
)

ALL_STEPS = [
    *storage.STEPS,
    *resource_manager.STEPS,
    *iam.STEPS,
    *cloud_asset.STEPS,
    *functions.STEPS,
    *app_engine.STEPS,
]

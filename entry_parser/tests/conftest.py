import os

# Keep litellm from fetching its model cost map over the network at import
# time; its background retry thread can deadlock test collection offline.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

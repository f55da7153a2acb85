import os

# litellm fetches its model cost map over the network in a background thread at
# import time; without network access that thread can deadlock test collection.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

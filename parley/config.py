"""Global configuration for Parley.

The two sides also have their own configurations, which see:

  - client.config
  - server.config
"""

import pathlib

# Used for various things. E.g. the LLM API key, the client log, and the conversation logs go here.
userdata_dir = "~/.config/parley/"

# Convert to an absolute path, just once here.
userdata_dir = pathlib.Path(userdata_dir).expanduser().resolve()

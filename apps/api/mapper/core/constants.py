"""Application constants."""

import re

# Address codes: letters, digits and hyphens only
ADDRESS_CODE_PATTERN = re.compile(r"^[A-Za-z0-9-]+$")

# Comma-separated list of address codes used when creating a map
SEQUENCE_CSV_PATTERN = re.compile(r"^([A-Za-z0-9-]+,?)*[A-Za-z0-9-]+$")

# Option codes also allow underscores
OPTION_CODE_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
OPTION_CODE_MAX_LENGTH = 50
OPTION_DESCRIPTION_MAX_LENGTH = 200

# Quicklink map selection
EARTH_RADIUS_METERS = 6_371_000
SAME_LOCALITY_METERS = 50  # Maps closer than this to each other are ranked by progress

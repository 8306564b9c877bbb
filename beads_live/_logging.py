# =============================================================================
# beads-live -- Package Logger
# =============================================================================

import logging

logger = logging.getLogger("beads_live")

"""County-level school spending panels and event studies of court-ordered finance reforms."""

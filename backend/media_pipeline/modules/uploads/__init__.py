"""Two-phase uploads: intent issuance, direct transport and finalize."""

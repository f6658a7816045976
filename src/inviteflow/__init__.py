"""inviteflow: Gmail invite sync and digest reply reconciliation."""

"""HTTP transport over the slotkeeper core."""

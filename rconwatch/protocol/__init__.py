"""BattlEye RCON frame codec and multi-packet reassembly."""

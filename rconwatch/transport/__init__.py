"""UDP session and the timer abstraction it runs on."""

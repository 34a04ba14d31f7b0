"""Pure domain vocabulary: clock, identity, events, codec, money, pagination, DTOs."""

from .dispatcher import ChannelConfig, ChannelDispatcher, ChannelResult, resolve_channel_config
from .email import SmtpMailer

__all__ = ["ChannelConfig", "ChannelDispatcher", "ChannelResult", "SmtpMailer", "resolve_channel_config"]

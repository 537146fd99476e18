"""
proxytunnel: HTTP CONNECT tunnelling through authenticating proxies
===================================================================

Punches a raw TCP tunnel through an upstream forward proxy, answering
proxy authentication challenges along the way:

  • Basic / Digest   – username + password
  • NTLM             – connection-bound challenge/response
  • Negotiate        – SPNEGO (Kerberos or NTLM underneath)
  • Kerberos         – raw Kerberos tokens

Cross-platform: Linux · macOS · Windows
"""

__version__ = "1.0.0"
__app_name__ = "proxytunnel"

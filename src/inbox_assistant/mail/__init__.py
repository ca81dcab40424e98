"""Mail and auth collaborators.

The assistant core only consumes the shape of a message detail (body and
attachments) and a valid access token. Everything Gmail-specific lives
behind two small protocols here:

- MailClient: list / get / delete messages (GmailClient, MemoryMailClient)
- AccessTokenProvider: just-in-time OAuth tokens (TokenManager,
  StaticTokenProvider)
"""

"""pypubsub topic tree for everything the sensor core publishes.

Registered with ``pub.addTopicDefnProvider(..., pub.TOPIC_TREE_FROM_CLASS)``
so that message data never has to be inferred from the first subscriber.
"""

# pylint: disable=invalid-name,too-few-public-methods,no-self-argument


class envsensor:
    """Root of the environmental sensor topics."""

    def msgDataSpec(source):
        """
        - source: the ReadingPublisher that sent the message
        """

    class connection:
        """Connection lifecycle."""

        def msgDataSpec(source):
            """
            - source: the ReadingPublisher that sent the message
            """

        class state:
            """The connection state changed."""

            def msgDataSpec(source, state, error):
                """
                - source: the ReadingPublisher that sent the message
                - state: the new ConnectionState
                - error: the EnvSensorError behind an ERROR state, otherwise None
                """

    class reading:
        """A new reading replaced the latest value of its channel."""

        def msgDataSpec(source, reading):
            """
            - source: the ReadingPublisher that sent the message
            - reading: the Reading that was decoded
            """

    class scan:
        """Device discovery."""

        def msgDataSpec(source):
            """
            - source: the ReadingPublisher that sent the message
            """

        class devices:
            """The candidate list changed."""

            def msgDataSpec(source, devices):
                """
                - source: the ReadingPublisher that sent the message
                - devices: tuple of DiscoveredDevice in first-seen order
                """

    class status:
        """Human readable status or error message."""

        def msgDataSpec(source, message, error):
            """
            - source: the ReadingPublisher that sent the message
            - message: text for display
            - error: the EnvSensorError being reported, or None
            """

    class permission:
        """The Bluetooth authorization flag changed."""

        def msgDataSpec(source, granted):
            """
            - source: the ReadingPublisher that sent the message
            - granted: whether the last authorization check passed
            """

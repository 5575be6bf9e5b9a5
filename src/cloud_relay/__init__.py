"""
Cloud Relay: bridges a device's local MQTT broker to Azure IoT Hub.

Checks the device's registration state, provisions it once when needed, then
relays producer topics to the cloud and cloud-to-device / twin updates back
to the local broker.
"""

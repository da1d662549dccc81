"""OAuth 1.0a HMAC-SHA1 signing."""

import base64
import hashlib
import hmac

from inventory_marketplaces.oauth import (
    OAuthCredentials,
    normalize_params,
    percent_encode,
    sign_request,
    signature_base_string,
)

CREDENTIALS = OAuthCredentials(
    consumer_key="ck",
    consumer_secret="cs",
    token="tok",
    token_secret="ts",
)


class TestPercentEncode:
    def test_unreserved_characters_stay_literal(self):
        assert percent_encode("aZ09-._~") == "aZ09-._~"

    def test_everything_else_is_encoded(self):
        assert percent_encode("a b+c/d&e=f!") == "a%20b%2Bc%2Fd%26e%3Df%21"

    def test_params_are_sorted_and_encoded(self):
        assert normalize_params({"b": "2 3", "a": "1"}) == "a=1&b=2%203"


class TestBaseString:
    def test_query_is_moved_into_params(self):
        base = signature_base_string(
            "get", "HTTPS://API.Example.com/api/store/v1/inventories?x=1", {"x": "1"}
        )

        assert base == (
            "GET&https%3A%2F%2Fapi.example.com%2Fapi%2Fstore%2Fv1%2Finventories&x%3D1"
        )


class TestSignRequest:
    def test_published_reference_vector(self):
        """The widely published example from the Twitter API documentation."""
        credentials = OAuthCredentials(
            consumer_key="xvz1evFS4wEEPTGEFPHBog",
            consumer_secret="kAcSOqF21Fu85e7zgTSnxzzenDbg7ZUGfSXhxDRGr4",
            token="370773112-GmHxMAgYyLbNEtIKZeRNFsMKPR9EyMZeS9weJAEb",
            token_secret="LswwdoUaIvS8ltyTt5jkRh4J50vUPVVHtR2YPi5kE",
        )

        signed = sign_request(
            "POST",
            "https://api.twitter.com/1.1/statuses/update.json?include_entities=true",
            credentials,
            extra_params={"status": "Hello Ladies + Gentlemen, a signed OAuth request!"},
            nonce="kYjzVBB8Y0ZFabxSWbWovY3uYSQ2pTgmZeNu2VS4cg",
            timestamp=1318622958,
        )

        assert signed.signature == "hCtSmYh+iHYCEqBWrE7C7hYmtUk="

    def test_signature_is_hmac_of_base_string(self):
        signed = sign_request(
            "GET",
            "https://api.bricklink.com/api/store/v1/inventories?status=Y",
            CREDENTIALS,
            nonce="n0nce",
            timestamp=1700000000,
        )

        assert signed.signing_key == "cs&ts"
        expected = base64.b64encode(
            hmac.new(b"cs&ts", signed.base_string.encode(), hashlib.sha1).digest()
        ).decode()
        assert signed.signature == expected
        assert signed.base_string.startswith(
            "GET&https%3A%2F%2Fapi.bricklink.com%2Fapi%2Fstore%2Fv1%2Finventories&"
        )
        assert "status%3DY" in signed.base_string
        assert "oauth_token%3Dtok" in signed.base_string

    def test_header_lists_sorted_oauth_params(self):
        signed = sign_request(
            "POST",
            "https://api.bricklink.com/api/store/v1/inventories",
            CREDENTIALS,
            nonce="abc",
            timestamp=1,
        )

        assert signed.header.startswith('OAuth oauth_consumer_key="ck", oauth_nonce="abc", ')
        names = [part.split("=", 1)[0] for part in signed.header[len("OAuth "):].split(", ")]
        assert names == sorted(names)
        assert f'oauth_signature="{percent_encode(signed.signature)}"' in signed.header
        assert signed.params["oauth_signature_method"] == "HMAC-SHA1"
        assert signed.params["oauth_version"] == "1.0"

    def test_nonce_changes_signature(self):
        url = "https://api.bricklink.com/api/store/v1/inventories"
        first = sign_request("GET", url, CREDENTIALS, nonce="a", timestamp=1)
        second = sign_request("GET", url, CREDENTIALS, nonce="b", timestamp=1)

        assert first.signature != second.signature

    def test_two_legged_credentials(self):
        signed = sign_request(
            "GET",
            "https://api.bricklink.com/api/store/v1/colors",
            OAuthCredentials(consumer_key="ck", consumer_secret="cs"),
            nonce_factory=lambda: "fixed",
            timestamp=1,
        )

        assert signed.signing_key == "cs&"
        assert "oauth_token" not in signed.params
        assert signed.params["oauth_nonce"] == "fixed"

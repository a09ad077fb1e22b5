from twamp_exporter.cli import main

main()
